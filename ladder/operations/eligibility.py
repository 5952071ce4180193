"""
Challenge eligibility rules.

Pure functions with no I/O: the same evaluation backs the leaderboard's
"can I challenge this player" markers and the authoritative check inside the
create-challenge transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ladder.config import Config
from ladder.utils.exceptions import IneligibleError, IneligibleReason
from ladder.utils.time_utils import ensure_utc


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: Optional[IneligibleReason] = None
    cooldown_remaining: Optional[timedelta] = None
    rank_gap: Optional[int] = None

    def __bool__(self) -> bool:
        return self.eligible


def evaluate(challenger_rank: int, target_rank: int, challenger_cooldown_until: Optional[datetime],
             now: datetime, challenge_range: Optional[int] = None) -> EligibilityResult:
    """
    Decide whether a player at ``challenger_rank`` may challenge ``target_rank``.

    Rules are checked in order and the first failure wins:
    1. An active loss cooldown blocks all challenges.
    2. The rank #1 player may challenge anyone.
    3. The rank distance must not exceed the challenge range.
    """
    if challenge_range is None:
        challenge_range = Config.CHALLENGE_RANGE

    cooldown_until = ensure_utc(challenger_cooldown_until)
    now = ensure_utc(now)
    if cooldown_until is not None and cooldown_until > now:
        return EligibilityResult(
            eligible=False,
            reason=IneligibleReason.IN_COOLDOWN,
            cooldown_remaining=cooldown_until - now
        )

    gap = abs(challenger_rank - target_rank)

    if challenger_rank == 1 and Config.TOP_RANK_UNRESTRICTED:
        return EligibilityResult(eligible=True, rank_gap=gap)

    if gap > challenge_range:
        return EligibilityResult(eligible=False, reason=IneligibleReason.OUT_OF_RANGE, rank_gap=gap)

    return EligibilityResult(eligible=True, rank_gap=gap)


def ensure_eligible(challenger_rank: int, target_rank: int, challenger_cooldown_until: Optional[datetime],
                    now: datetime, challenge_range: Optional[int] = None) -> EligibilityResult:
    """Evaluate and raise IneligibleError when the challenge is not allowed."""
    if challenge_range is None:
        challenge_range = Config.CHALLENGE_RANGE

    result = evaluate(challenger_rank, target_rank, challenger_cooldown_until, now, challenge_range)
    if not result.eligible:
        raise IneligibleError(
            result.reason,
            cooldown_remaining=result.cooldown_remaining,
            rank_gap=result.rank_gap,
            challenge_range=challenge_range
        )
    return result
