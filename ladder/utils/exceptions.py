"""
Domain exceptions for the ladder with user-friendly error messages.

Every error carries a machine-readable ``kind`` plus the values the UI
needs to render a specific message (remaining cooldown, current status, ...).
"""

from datetime import timedelta
from enum import Enum
from typing import Optional

from ladder.utils.time_utils import format_duration


class ErrorKind(Enum):
    INELIGIBLE = "INELIGIBLE"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATE = "INVALID_STATE"
    MATCH_NOT_COMPLETE = "MATCH_NOT_COMPLETE"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    INVALID_INPUT = "INVALID_INPUT"


class IneligibleReason(Enum):
    IN_COOLDOWN = "IN_COOLDOWN"
    OUT_OF_RANGE = "OUT_OF_RANGE"


class LadderError(Exception):
    """Base exception for ladder errors."""
    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.user_message}


class IneligibleError(LadderError):
    """Raised when the eligibility rules deny a challenge."""
    kind = ErrorKind.INELIGIBLE

    def __init__(self, reason: IneligibleReason, cooldown_remaining: Optional[timedelta] = None,
                 rank_gap: Optional[int] = None, challenge_range: Optional[int] = None):
        self.reason = reason
        self.cooldown_remaining = cooldown_remaining
        self.rank_gap = rank_gap
        self.challenge_range = challenge_range

        if reason == IneligibleReason.IN_COOLDOWN:
            remaining = format_duration(cooldown_remaining) if cooldown_remaining else "a while"
            super().__init__(
                f"Challenger in cooldown for {remaining}",
                f"❌ You are on cooldown after your last loss. Try again in {remaining}."
            )
        else:
            super().__init__(
                f"Rank gap {rank_gap} exceeds challenge range {challenge_range}",
                f"❌ You can only challenge players within ±{challenge_range} spots of your current rank."
            )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason.value
        if self.cooldown_remaining is not None:
            data["cooldown_remaining_seconds"] = int(self.cooldown_remaining.total_seconds())
        return data


class NotFoundError(LadderError):
    kind = ErrorKind.NOT_FOUND


class ProfileNotFoundError(NotFoundError):
    def __init__(self, profile_id):
        self.profile_id = profile_id
        super().__init__(
            f"Profile {profile_id} not found",
            "❌ That player isn't on the ladder."
        )


class AccountNotLinkedError(NotFoundError):
    """Raised when an account has not joined or claimed a ladder profile."""

    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(
            f"No profile owned by account {account_id}",
            "❌ You're not on the ladder yet. Use `/join` to sign up or claim your spot."
        )


class ChallengeNotFoundError(NotFoundError):
    def __init__(self, challenge_id):
        self.challenge_id = challenge_id
        super().__init__(
            f"Challenge {challenge_id} not found",
            f"❌ Challenge #{challenge_id} could not be found."
        )


class ForbiddenError(LadderError):
    """Raised when the caller is not the party allowed to make a transition."""
    kind = ErrorKind.FORBIDDEN

    def __init__(self, actor_id, action: str):
        self.actor_id = actor_id
        self.action = action
        super().__init__(
            f"Profile {actor_id} may not {action}",
            f"❌ You are not allowed to {action}."
        )


class InvalidStateError(LadderError):
    """Raised when a transition is attempted from a state that does not permit it."""
    kind = ErrorKind.INVALID_STATE

    def __init__(self, challenge_id, current_status: str, action: str):
        self.challenge_id = challenge_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} challenge {challenge_id} while {current_status}",
            f"❌ Challenge #{challenge_id} is {current_status}, so you can't {action} it."
        )


class MatchNotCompleteError(LadderError):
    """Raised when finalize is called with a tie or before either side reached the race target."""
    kind = ErrorKind.MATCH_NOT_COMPLETE

    def __init__(self, games_to_win: int, score1: int, score2: int):
        self.games_to_win = games_to_win
        self.score1 = score1
        self.score2 = score2
        if score1 == score2:
            message = f"Tied at {score1}-{score2}, no winner in a race to {games_to_win}"
        else:
            message = f"Neither side reached {games_to_win} ({score1}-{score2})"
        super().__init__(
            message,
            f"❌ Match not complete. One player needs to reach {games_to_win} games, and a tie has no winner."
        )


class SettlementFailedError(LadderError):
    """Raised when the atomic rank settlement could not complete."""
    kind = ErrorKind.SETTLEMENT_FAILED

    def __init__(self, winner_id, loser_id, details: str = None):
        self.winner_id = winner_id
        self.loser_id = loser_id
        super().__init__(
            f"Settlement failed for winner {winner_id} / loser {loser_id}: {details}",
            "❌ The result could not be recorded on the ladder. The match is still open; please try again."
        )


class ValidationError(LadderError):
    """Raised when caller input is malformed."""
    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str):
        super().__init__(message, f"❌ {message}")
