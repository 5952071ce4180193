"""
Challenge Operations - challenge lifecycle state machine

Handles challenge creation, responses, going live and finalizing results.
Every status change is a compare-and-swap against the expected prior status,
so two racing transitions can never both apply. Notifications are sent only
after the transaction commits and never affect the outcome.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Iterable, Callable, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ladder.config import Config
from ladder.database.database import Database, ChallengeFilter
from ladder.database.models import Challenge, ChallengeStatus, GameType, Profile, sources_for
from ladder.operations.eligibility import ensure_eligible
from ladder.operations.settlement import RankSettlement, SettlementResult
from ladder.utils.exceptions import (
    ChallengeNotFoundError, ForbiddenError, InvalidStateError,
    MatchNotCompleteError, ProfileNotFoundError, SettlementFailedError, ValidationError
)
from ladder.utils.logger import setup_logger
from ladder.utils.time_utils import utcnow, ensure_utc

logger = setup_logger(__name__)


class ChallengeDecision(Enum):
    ACCEPT = "accept"
    DECLINE = "decline"

    @classmethod
    def parse(cls, value) -> 'ChallengeDecision':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Decision must be 'accept' or 'decline', not '{value}'.")


@dataclass
class MatchResult:
    """Result of a finalized match"""
    challenge: Challenge
    settlement: SettlementResult

    @property
    def winner_id(self) -> int:
        return self.settlement.winner_id

    @property
    def loser_id(self) -> int:
        return self.settlement.loser_id


class ChallengeOperations:
    """
    Service class for the challenge lifecycle.

    pending -> negotiating (accept) | forfeited (decline) | expired (deadline)
    negotiating -> live -> completed
    """

    def __init__(self, db: Database, notifier=None, settlement: Optional[RankSettlement] = None,
                 score_hub=None, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize ChallengeOperations.

        Args:
            db: Database instance for persistence
            notifier: Optional LadderNotifier for push, activity and entity-change events
            settlement: Rank settlement procedure (defaults to RankSettlement(db))
            score_hub: Optional LiveScoreHub whose session is discarded on finalize
            clock: Callable returning the current aware UTC time
        """
        self.db = db
        self.notifier = notifier
        self.settlement = settlement or RankSettlement(db)
        self.score_hub = score_hub
        self.clock = clock or utcnow
        self.logger = setup_logger(f"{__name__}.ChallengeOperations")

    # Commands

    async def create_challenge(
        self,
        challenger_id: int,
        target_id: int,
        game_type: Union[GameType, str] = GameType.EIGHT_BALL,
        games_to_win: Optional[int] = None,
        proposed_time: Optional[datetime] = None,
        venue: Optional[str] = None
    ) -> Challenge:
        """
        Create a pending challenge from one player to another.

        Eligibility is re-checked against freshly locked profile rows, and the
        challenger's engagement points are awarded in the same transaction.

        Raises:
            ValidationError: Self-challenge, unknown game type or race out of bounds
            ProfileNotFoundError: Either player does not exist
            IneligibleError: Challenger is in cooldown or the target is out of range
        """
        if challenger_id == target_id:
            raise ValidationError("You can't challenge yourself.")

        try:
            game_type = GameType.parse(game_type)
        except ValueError:
            raise ValidationError(f"Unknown game type '{game_type}'. Choose 8-ball, 9-ball or 10-ball.")

        if games_to_win is None:
            games_to_win = Config.DEFAULT_GAMES_TO_WIN
        if (not isinstance(games_to_win, int)
                or not Config.MIN_GAMES_TO_WIN <= games_to_win <= Config.MAX_GAMES_TO_WIN):
            raise ValidationError(
                f"Race must be between {Config.MIN_GAMES_TO_WIN} and {Config.MAX_GAMES_TO_WIN} games."
            )

        now = self.clock()
        venue = (venue or '').strip() or Config.DEFAULT_VENUE
        proposed_time = ensure_utc(proposed_time) or now + timedelta(days=Config.DEFAULT_PROPOSED_TIME_DAYS)

        async def _create(session: AsyncSession) -> Challenge:
            profiles = await self.db.get_profiles_for_update([challenger_id, target_id], session)
            by_id = {profile.id: profile for profile in profiles}
            challenger = by_id.get(challenger_id)
            target = by_id.get(target_id)
            if challenger is None:
                raise ProfileNotFoundError(challenger_id)
            if target is None:
                raise ProfileNotFoundError(target_id)

            ensure_eligible(challenger.ladder_rank, target.ladder_rank, challenger.cooldown_until, now)

            challenge = await self.db.create_challenge(
                session=session,
                challenger_id=challenger_id,
                challenged_id=target_id,
                game_type=game_type,
                games_to_win=games_to_win,
                venue=venue,
                proposed_time=proposed_time,
                status=ChallengeStatus.PENDING,
                deadline=now + timedelta(days=Config.CHALLENGE_DEADLINE_DAYS),
                created_at=now,
                updated_at=now
            )

            challenger.points = (challenger.points or 0) + Config.POINTS_CHALLENGE
            await session.flush()

            self.logger.info(
                f"Created challenge {challenge.id}: #{challenger.ladder_rank} {challenger.display_name} -> "
                f"#{target.ladder_rank} {target.display_name} ({game_type.value}, race to {games_to_win})"
            )
            return challenge

        async with self.db.transaction() as session:
            challenge = await _create(session)

        self._notify('challenge_created', challenge)
        return challenge

    async def respond(
        self,
        challenge_id: int,
        responder_id: int,
        decision: Union[ChallengeDecision, str],
        venue: Optional[str] = None,
        proposed_time: Optional[datetime] = None
    ) -> Challenge:
        """
        Accept or decline a pending challenge as the challenged player.

        Accepting moves the challenge to negotiating (optionally replacing the
        venue and time); declining forfeits it.

        Raises:
            ChallengeNotFoundError: Unknown challenge
            InvalidStateError: Challenge is not pending, including one that
                was pending but past its deadline (it is expired on the spot)
            ForbiddenError: Responder is not the challenged player
        """
        decision = ChallengeDecision.parse(decision)
        now = self.clock()

        async def _respond(session: AsyncSession):
            challenge = await self._get_locked(challenge_id, session)

            expired = await self._expire_if_overdue(challenge, session, now)
            if expired:
                return expired, False

            if challenge.status != ChallengeStatus.PENDING:
                raise InvalidStateError(challenge_id, challenge.status.value, "respond to")

            if responder_id != challenge.challenged_id:
                raise ForbiddenError(responder_id, "respond to this challenge")

            values = {'responded_at': now}
            if decision == ChallengeDecision.ACCEPT:
                values['status'] = ChallengeStatus.NEGOTIATING
                if venue and venue.strip():
                    values['venue'] = venue.strip()
                if proposed_time:
                    values['proposed_time'] = ensure_utc(proposed_time)
            else:
                values['status'] = ChallengeStatus.FORFEITED

            await self._transition(challenge, session, "respond to", **values)
            challenge = await self.db.get_challenge(challenge_id, session=session)

            self.logger.info(
                f"Challenge {challenge_id} {'accepted' if decision == ChallengeDecision.ACCEPT else 'declined'} "
                f"by profile {responder_id} "
                f"-> {challenge.status.value}"
            )
            return challenge, True

        async with self.db.transaction() as session:
            challenge, applied = await _respond(session)

        if not applied:
            self._notify('challenges_expired', [challenge_id])
            raise InvalidStateError(challenge_id, challenge.status.value, "respond to")

        self._notify('challenge_responded', challenge, decision == ChallengeDecision.ACCEPT)
        return challenge

    async def update_details(
        self,
        challenge_id: int,
        actor_id: int,
        venue: Optional[str] = None,
        proposed_time: Optional[datetime] = None
    ) -> Challenge:
        """Change the venue or time of an accepted challenge before it goes live."""
        if not (venue and venue.strip()) and proposed_time is None:
            raise ValidationError("Provide a venue or a time to update.")

        async with self.db.transaction() as session:
            challenge = await self._get_locked(challenge_id, session)

            if not challenge.involves(actor_id):
                raise ForbiddenError(actor_id, "change this match")
            if challenge.status != ChallengeStatus.NEGOTIATING:
                raise InvalidStateError(challenge_id, challenge.status.value, "change the details of")

            values = {}
            if venue and venue.strip():
                values['venue'] = venue.strip()
            if proposed_time is not None:
                values['proposed_time'] = ensure_utc(proposed_time)

            await self._transition(challenge, session, "change the details of",
                                   expected=[ChallengeStatus.NEGOTIATING], **values)
            challenge = await self.db.get_challenge(challenge_id, session=session)

        self.logger.info(f"Challenge {challenge_id} details updated by profile {actor_id}: {values}")
        self._notify('details_updated', challenge)
        return challenge

    async def go_live(self, challenge_id: int, actor_id: Optional[int] = None,
                      stream_url: Optional[str] = None) -> Challenge:
        """
        Start an agreed match.

        Every player with a registered push token is told the match is live.

        Raises:
            ChallengeNotFoundError: Unknown challenge
            ForbiddenError: Actor given and not a participant
            InvalidStateError: Challenge is not negotiating
        """
        now = self.clock()

        async with self.db.transaction() as session:
            challenge = await self._get_locked(challenge_id, session)

            if actor_id is not None and not challenge.involves(actor_id):
                raise ForbiddenError(actor_id, "start this match")

            live_from = sources_for(ChallengeStatus.LIVE)
            if challenge.status not in live_from:
                raise InvalidStateError(challenge_id, challenge.status.value, "go live with")

            values = {'status': ChallengeStatus.LIVE, 'started_at': now}
            if stream_url and stream_url.strip():
                values['stream_url'] = self._clean_stream_url(stream_url)

            await self._transition(challenge, session, "go live with", **values)
            challenge = await self.db.get_challenge(challenge_id, session=session)

        self.logger.info(f"Challenge {challenge_id} is LIVE")
        self._notify('match_live', challenge)
        return challenge

    async def set_stream_url(self, challenge_id: int, actor_id: int, url: str) -> Challenge:
        """Attach a stream link to a live match."""
        url = self._clean_stream_url(url)

        async with self.db.transaction() as session:
            challenge = await self._get_locked(challenge_id, session)

            if not challenge.involves(actor_id):
                raise ForbiddenError(actor_id, "set the stream for this match")
            if challenge.status != ChallengeStatus.LIVE:
                raise InvalidStateError(challenge_id, challenge.status.value, "set a stream for")

            await self._transition(challenge, session, "set a stream for",
                                   expected=[ChallengeStatus.LIVE], stream_url=url)
            challenge = await self.db.get_challenge(challenge_id, session=session)

        self.logger.info(f"Challenge {challenge_id} stream set to {url}")
        self._notify('details_updated', challenge)
        return challenge

    async def finalize(self, challenge_id: int, score1: int, score2: int,
                       actor_id: Optional[int] = None) -> MatchResult:
        """
        Record the final score of a live match and settle the ladder.

        ``score1`` is the challenger's score. Completion, rank swap, loser
        cooldown and points all commit together or not at all.

        Raises:
            ValidationError: Negative scores, or both sides at the race target
            ChallengeNotFoundError: Unknown challenge
            ForbiddenError: Actor given and not a participant
            InvalidStateError: Challenge is not live (including already completed)
            MatchNotCompleteError: Tied scores, or neither side reached the race target
            SettlementFailedError: Ladder update failed; the match stays live
        """
        for score in (score1, score2):
            if not isinstance(score, int) or isinstance(score, bool) or score < 0:
                raise ValidationError("Scores must be whole numbers of zero or more.")

        now = self.clock()

        async def _finalize(session: AsyncSession) -> MatchResult:
            challenge = await self._get_locked(challenge_id, session)

            if actor_id is not None and not challenge.involves(actor_id):
                raise ForbiddenError(actor_id, "report the result of this match")
            if challenge.status != ChallengeStatus.LIVE:
                raise InvalidStateError(challenge_id, challenge.status.value, "finalize")

            target = challenge.games_to_win
            # Ties never decide a race, whatever the count
            if score1 == score2 or (score1 < target and score2 < target):
                raise MatchNotCompleteError(target, score1, score2)
            if score1 >= target and score2 >= target:
                raise ValidationError(f"Only one player can reach {target} games.")

            winner_id = challenge.challenger_id if score1 >= target else challenge.challenged_id
            loser_id = challenge.opponent_of(winner_id)

            await self._transition(
                challenge, session, "finalize",
                status=ChallengeStatus.COMPLETED,
                challenger_score=score1,
                challenged_score=score2,
                winner_id=winner_id,
                completed_at=now
            )

            try:
                settlement = await self.settlement.settle_match(winner_id, loser_id, session=session)

                winner = await session.get(Profile, winner_id)
                loser = await session.get(Profile, loser_id)
                loser.cooldown_until = now + timedelta(hours=Config.LOSS_COOLDOWN_HOURS)
                winner.points = (winner.points or 0) + Config.POINTS_PLAY
                loser.points = (loser.points or 0) + Config.POINTS_PLAY
                await session.flush()
            except SettlementFailedError:
                raise
            except SQLAlchemyError as e:
                raise SettlementFailedError(winner_id, loser_id, str(e)) from e

            challenge = await self.db.get_challenge(challenge_id, session=session)
            return MatchResult(challenge=challenge, settlement=settlement)

        try:
            async with self.db.transaction() as session:
                result = await _finalize(session)
        except SettlementFailedError as e:
            self.logger.error(f"Settlement failed for challenge {challenge_id}, match left live: {e}")
            raise

        self.logger.info(
            f"Challenge {challenge_id} completed {score1}-{score2}: winner {result.winner_id}"
            + (", ranks swapped" if result.settlement.swapped else "")
        )

        if self.score_hub is not None:
            try:
                await self.score_hub.discard(challenge_id)
            except Exception as e:
                self.logger.warning(f"Could not close live score session for challenge {challenge_id}: {e}")

        self._notify('match_completed', result.challenge, result.settlement)
        return result

    async def expire_overdue_challenges(self, now: Optional[datetime] = None) -> List[int]:
        """
        Move every pending challenge past its deadline to expired.

        Returns:
            Ids of the challenges that were expired by this sweep
        """
        now = ensure_utc(now) or self.clock()
        expired_ids = []

        async with self.db.transaction() as session:
            for challenge_id in await self.db.get_overdue_challenge_ids(now, session=session):
                if await self.db.compare_and_set_challenge(
                    challenge_id, sources_for(ChallengeStatus.EXPIRED), session, status=ChallengeStatus.EXPIRED
                ):
                    expired_ids.append(challenge_id)
                    self.logger.info(f"Expired challenge {challenge_id}")

        if expired_ids:
            self.logger.info(f"Expired {len(expired_ids)} overdue challenges")
            self._notify('challenges_expired', expired_ids)

        return expired_ids

    # Queries

    async def get_challenge(self, challenge_id: int) -> Challenge:
        """
        Get a challenge by id, expiring it first if it is pending and overdue.

        Raises:
            ChallengeNotFoundError: Unknown challenge
        """
        now = self.clock()

        async with self.db.transaction() as session:
            challenge = await self.db.get_challenge(challenge_id, session=session)
            if not challenge:
                raise ChallengeNotFoundError(challenge_id)
            expired = await self._expire_if_overdue(challenge, session, now)

        if expired:
            self._notify('challenges_expired', [challenge_id])
            return expired
        return challenge

    async def list_for_profile(self, profile_id: int, role: str = "any",
                               statuses: Optional[Iterable[ChallengeStatus]] = None,
                               limit: Optional[int] = 50) -> List[Challenge]:
        """
        List a player's challenges, newest first.

        Args:
            profile_id: Player whose challenges to list
            role: "any", "challenger" (outbox) or "challenged" (inbox)
            statuses: Optional status filter, applied before lazy expiry
            limit: Maximum rows to return
        """
        if role not in ("any", "challenger", "challenged"):
            raise ValidationError(f"Unknown challenge role '{role}'.")
        return await self._list(ChallengeFilter(
            profile_id=profile_id, role=role,
            statuses=list(statuses) if statuses is not None else None,
            limit=limit
        ))

    async def get_pending_for_profile(self, profile_id: int) -> List[Challenge]:
        """Challenges awaiting this player's response"""
        challenges = await self._list(ChallengeFilter(
            profile_id=profile_id, role="challenged",
            statuses=[ChallengeStatus.PENDING], limit=None
        ))
        return [c for c in challenges if c.status == ChallengeStatus.PENDING]

    async def get_live_challenges(self) -> List[Challenge]:
        return await self._list(ChallengeFilter(statuses=[ChallengeStatus.LIVE], limit=None))

    async def get_match_history(self, profile_id: int, limit: int = 20) -> List[Challenge]:
        return await self._list(ChallengeFilter(
            profile_id=profile_id, statuses=[ChallengeStatus.COMPLETED], limit=limit
        ))

    # Helpers

    async def _list(self, challenge_filter: ChallengeFilter) -> List[Challenge]:
        now = self.clock()
        expired_ids = []

        async with self.db.transaction() as session:
            challenges = await self.db.list_challenges(challenge_filter, session=session)
            result = []
            for challenge in challenges:
                expired = await self._expire_if_overdue(challenge, session, now)
                if expired:
                    expired_ids.append(challenge.id)
                    challenge = expired
                result.append(challenge)

        if expired_ids:
            self._notify('challenges_expired', expired_ids)
        return result

    async def _get_locked(self, challenge_id: int, session: AsyncSession) -> Challenge:
        challenge = await self.db.get_challenge(challenge_id, session=session, for_update=True)
        if not challenge:
            raise ChallengeNotFoundError(challenge_id)
        return challenge

    async def _transition(self, challenge: Challenge, session: AsyncSession, action: str,
                          expected: Optional[List[ChallengeStatus]] = None, **values) -> None:
        """
        Compare-and-swap; raises InvalidStateError if the status moved underneath us.

        Status changes take their expected prior statuses from ALLOWED_TRANSITIONS.
        Updates that keep the status pass ``expected`` explicitly.
        """
        if expected is None:
            expected = sources_for(values['status'])
        if not await self.db.compare_and_set_challenge(challenge.id, expected, session, **values):
            current = await self.db.get_challenge(challenge.id, session=session)
            status = current.status.value if current else "gone"
            self.logger.warning(f"Lost transition race on challenge {challenge.id} ({action}): now {status}")
            raise InvalidStateError(challenge.id, status, action)

    async def _expire_if_overdue(self, challenge: Challenge, session: AsyncSession,
                                 now: datetime) -> Optional[Challenge]:
        """Expire a pending challenge past its deadline; returns the reloaded row if it was expired"""
        if not challenge.is_overdue(now):
            return None
        if not await self.db.compare_and_set_challenge(
            challenge.id, sources_for(ChallengeStatus.EXPIRED), session, status=ChallengeStatus.EXPIRED
        ):
            return None
        self.logger.info(f"Expired overdue challenge {challenge.id} on read")
        return await self.db.get_challenge(challenge.id, session=session)

    @staticmethod
    def _clean_stream_url(url: Optional[str]) -> str:
        url = (url or '').strip()
        if not url.lower().startswith(('http://', 'https://')):
            raise ValidationError("Stream link must start with http:// or https://.")
        return url

    def _notify(self, event: str, *args) -> None:
        if self.notifier is None:
            return
        handler = getattr(self.notifier, event, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            self.logger.error(f"Failed to schedule {event} notification: {e}")
