"""
Profile Operations

Registration, claiming of pre-seeded ("ghost") profiles and ladder queries.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import update, delete
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ladder.database.database import Database
from ladder.database.models import Activity, Challenge, Profile
from ladder.operations.eligibility import EligibilityResult, evaluate
from ladder.utils.exceptions import (
    AccountNotLinkedError, ForbiddenError, ProfileNotFoundError, ValidationError
)
from ladder.utils.logger import setup_logger
from ladder.utils.time_utils import utcnow

logger = setup_logger(__name__)


@dataclass
class ClaimResult:
    """Outcome of joining the ladder"""
    profile: Profile
    created: bool
    merged_ghost_id: Optional[int] = None

    @property
    def merged(self) -> bool:
        return self.merged_ghost_id is not None


@dataclass
class RankIntegrityReport:
    total_profiles: int
    duplicate_ranks: Dict[int, List[int]] = field(default_factory=dict)
    missing_ranks: List[int] = field(default_factory=list)
    invalid_ranks: List[int] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (self.duplicate_ranks or self.invalid_ranks)

    @property
    def is_contiguous(self) -> bool:
        return self.is_valid and not self.missing_ranks


class ProfileOperations:
    """Player profile lifecycle and ladder views"""

    def __init__(self, db: Database, notifier=None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.notifier = notifier
        self.clock = clock or utcnow
        self.logger = setup_logger(f"{__name__}.ProfileOperations")

    async def claim_or_create_profile(self, account_id: str, display_name: str,
                                      phone: Optional[str] = None,
                                      avatar_url: Optional[str] = None) -> ClaimResult:
        """
        Put an account on the ladder.

        Returns the account's existing profile if it has one. Otherwise a ghost
        profile with the same display name (case-insensitive, unclaimed, no phone)
        is merged: the new profile takes over its rank, rating, points and
        history, and the ghost row is removed. Failing both, a fresh profile is
        appended to the bottom of the ladder.
        """
        account_id = str(account_id)
        display_name = (display_name or '').strip()
        if not display_name:
            raise ValidationError("Display name can't be empty.")

        async def _claim() -> ClaimResult:
            async with self.db.transaction() as session:
                existing = await self.db.get_profile_by_owner(account_id, session=session)
                if existing:
                    return ClaimResult(profile=existing, created=False)

                ghost = await self.db.find_unclaimed_profile_by_name(
                    display_name, session=session, for_update=True
                )
                if ghost:
                    return await self._merge_ghost(ghost, account_id, display_name, phone, avatar_url, session)

                profile = await self.db.create_profile(
                    display_name, session=session,
                    owner_id=account_id, phone=phone, avatar_url=avatar_url
                )
                return ClaimResult(profile=profile, created=True)

        result = await self._with_retry(_claim)

        if result.merged:
            self.logger.info(
                f"Account {account_id} merged ghost profile {result.merged_ghost_id} "
                f"into profile {result.profile.id} at rank #{result.profile.ladder_rank}"
            )
            self._notify('profile_claimed', result.profile, result.merged_ghost_id)
        elif result.created:
            self.logger.info(
                f"Account {account_id} joined as profile {result.profile.id} "
                f"at rank #{result.profile.ladder_rank}"
            )
            self._notify('profile_created', result.profile)

        return result

    async def _merge_ghost(self, ghost: Profile, account_id: str, display_name: str,
                           phone: Optional[str], avatar_url: Optional[str],
                           session: AsyncSession) -> ClaimResult:
        ghost_id = ghost.id
        rank = ghost.ladder_rank

        # Free the rank before the new row takes it
        ghost.ladder_rank = -ghost_id
        await session.flush()

        profile = await self.db.create_profile(
            display_name,
            session=session,
            ladder_rank=rank,
            owner_id=account_id,
            phone=phone,
            avatar_url=avatar_url or ghost.avatar_url,
            fargo_rating=ghost.fargo_rating,
            points=ghost.points,
            cooldown_until=ghost.cooldown_until
        )

        for column in (Challenge.challenger_id, Challenge.challenged_id, Challenge.winner_id):
            await session.execute(
                update(Challenge)
                .where(column == ghost_id)
                .values({column.key: profile.id})
                .execution_options(synchronize_session=False)
            )
        await session.execute(
            update(Activity)
            .where(Activity.user_id == ghost_id)
            .values(user_id=profile.id)
            .execution_options(synchronize_session=False)
        )

        session.expunge(ghost)
        await session.execute(
            delete(Profile)
            .where(Profile.id == ghost_id)
            .execution_options(synchronize_session=False)
        )
        await session.flush()

        return ClaimResult(profile=profile, created=True, merged_ghost_id=ghost_id)

    async def claim_profile(self, profile_id: int, account_id: str) -> Profile:
        """
        Take ownership of a specific unclaimed profile.

        Raises:
            ProfileNotFoundError: Unknown profile
            ValidationError: The account already owns a profile
            ForbiddenError: The profile already belongs to someone
        """
        account_id = str(account_id)

        async with self.db.transaction() as session:
            if await self.db.get_profile_by_owner(account_id, session=session):
                raise ValidationError("You already have a ladder profile.")

            profile = await self.db.get_profile(profile_id, session=session, for_update=True)
            if not profile:
                raise ProfileNotFoundError(profile_id)

            claimed = await self.db.claim_profile(profile_id, account_id, session=session)
            if not claimed:
                raise ForbiddenError(account_id, "claim a profile that already belongs to someone")

        self.logger.info(f"Account {account_id} claimed profile {profile_id} ({claimed.display_name})")
        self._notify('profile_claimed', claimed, None)
        return claimed

    async def seed_ghost_profile(self, display_name: str, fargo_rating: int = 0, points: int = 0,
                                 ladder_rank: Optional[int] = None,
                                 session: Optional[AsyncSession] = None) -> Profile:
        """
        Pre-seed an unclaimed profile for a player who has not signed up yet.

        Without an explicit rank the ghost joins the bottom of the ladder.
        """
        display_name = (display_name or '').strip()
        if not display_name:
            raise ValidationError("Display name can't be empty.")
        if fargo_rating < 0 or points < 0:
            raise ValidationError("Fargo rating and points can't be negative.")
        if ladder_rank is not None and ladder_rank < 1:
            raise ValidationError("Ladder rank must be 1 or higher.")

        profile = await self.db.create_profile(
            display_name, session=session, ladder_rank=ladder_rank,
            fargo_rating=fargo_rating, points=points
        )
        self.logger.info(f"Seeded ghost profile {profile.id} '{display_name}' at rank #{profile.ladder_rank}")
        return profile

    async def get_profile(self, profile_id: int) -> Profile:
        profile = await self.db.get_profile(profile_id)
        if not profile:
            raise ProfileNotFoundError(profile_id)
        return profile

    async def get_profile_by_owner(self, account_id: str) -> Optional[Profile]:
        return await self.db.get_profile_by_owner(str(account_id))

    async def require_profile_for_owner(self, account_id: str) -> Profile:
        """Get the account's profile or raise AccountNotLinkedError"""
        profile = await self.get_profile_by_owner(account_id)
        if not profile:
            raise AccountNotLinkedError(account_id)
        return profile

    async def register_push_token(self, profile_id: int, token: Optional[str]) -> Profile:
        """Store (or clear, with None) the device push token for a profile"""
        if token is not None:
            token = token.strip()
            if not token:
                raise ValidationError("Push token can't be empty.")

        profile = await self.db.update_profile(profile_id, expo_push_token=token)
        if not profile:
            raise ProfileNotFoundError(profile_id)

        self.logger.info(f"{'Registered' if token else 'Cleared'} push token for profile {profile_id}")
        return profile

    async def get_ladder(self, limit: Optional[int] = None) -> List[Profile]:
        return await self.db.get_ladder(limit=limit)

    async def get_points_leaderboard(self, limit: Optional[int] = None) -> List[Profile]:
        return await self.db.get_points_leaderboard(limit=limit)

    async def get_challengeable_targets(self, profile_id: int,
                                        now: Optional[datetime] = None) -> List[Tuple[Profile, EligibilityResult]]:
        """
        Evaluate every other ladder entry against a player's standing.

        Returns (profile, result) pairs in ladder order, for rendering a
        "can challenge" marker beside each row.
        """
        now = now or self.clock()

        async with self.db.get_session() as session:
            me = await self.db.get_profile(profile_id, session=session)
            if not me:
                raise ProfileNotFoundError(profile_id)
            ladder = await self.db.get_ladder(session=session)

        return [
            (profile, evaluate(me.ladder_rank, profile.ladder_rank, me.cooldown_until, now))
            for profile in ladder
            if profile.id != me.id
        ]

    async def verify_rank_integrity(self) -> RankIntegrityReport:
        """Report duplicate, non-positive and missing ladder ranks"""
        ladder = await self.db.get_ladder()
        counts = Counter(profile.ladder_rank for profile in ladder)

        report = RankIntegrityReport(total_profiles=len(ladder))
        report.duplicate_ranks = {
            rank: [p.id for p in ladder if p.ladder_rank == rank]
            for rank, count in counts.items() if count > 1
        }
        report.invalid_ranks = sorted(rank for rank in counts if rank < 1)

        valid = [rank for rank in counts if rank >= 1]
        if valid:
            report.missing_ranks = sorted(set(range(1, max(valid) + 1)) - set(valid))

        if report.is_valid:
            self.logger.debug(f"Rank integrity OK across {report.total_profiles} profiles")
        else:
            self.logger.error(
                f"Rank integrity violated: duplicates={report.duplicate_ranks}, invalid={report.invalid_ranks}"
            )
        return report

    async def _with_retry(self, func: Callable, max_retries: int = 3):
        """Retry on constraint or lock conflicts from concurrent sign-ups"""
        for attempt in range(max_retries):
            try:
                return await func()
            except (IntegrityError, OperationalError) as e:
                if attempt == max_retries - 1:
                    raise
                self.logger.warning(f"Retry attempt {attempt + 1} for {func.__name__}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))

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
