from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Iterable, Any
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy import select, update, func, or_
from contextlib import asynccontextmanager

from ladder.config import Config
from ladder.database.models import (
    Base, Profile, Challenge, Activity, ChallengeStatus, ActivityType
)
from ladder.utils.logger import setup_logger


@dataclass
class ChallengeFilter:
    """Criteria for listing challenges."""
    profile_id: Optional[int] = None
    role: str = "any"  # "any", "challenger" or "challenged"
    statuses: Optional[Iterable[ChallengeStatus]] = None
    limit: Optional[int] = 50
    newest_first: bool = True


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        elif database_url.startswith('postgresql://'):
            database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context commit together on success, or roll
        back together on failure. Exceptions must be allowed to propagate out
        of the context for rollback to occur.

        Usage:
            async with db.transaction() as session:
                challenge = await db.get_challenge(challenge_id, session=session, for_update=True)
                await settlement.settle_match(winner_id, loser_id, session=session)
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def session_scope(self, session: Optional[AsyncSession] = None, write: bool = False):
        """
        Uses the provided session if available, otherwise opens one.

        A caller-provided session is never committed here; the caller owns
        its lifecycle. Owned sessions commit on exit when ``write`` is set.
        """
        if session:
            yield session
        elif write:
            async with self.transaction() as new_session:
                yield new_session
        else:
            async with self.get_session() as new_session:
                yield new_session

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Profile operations
    async def get_profile(self, profile_id: int, session: Optional[AsyncSession] = None,
                          for_update: bool = False) -> Optional[Profile]:
        """Get a profile by id, optionally locking the row"""
        async with self.session_scope(session) as s:
            stmt = (
                select(Profile)
                .where(Profile.id == profile_id)
                .execution_options(populate_existing=True)
            )
            if for_update:
                stmt = stmt.with_for_update()
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def get_profiles_for_update(self, profile_ids: Iterable[int],
                                      session: AsyncSession) -> List[Profile]:
        """
        Lock several profile rows, always in ascending id order.

        A fixed acquisition order keeps two concurrent transactions touching the
        same pair of players from deadlocking. On SQLite, with_for_update() is a
        no-op and the database-level write lock serializes writers instead.
        """
        ids = sorted(set(profile_ids))
        result = await session.execute(
            select(Profile)
            .where(Profile.id.in_(ids))
            .order_by(Profile.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_profile_by_owner(self, owner_id: str,
                                   session: Optional[AsyncSession] = None) -> Optional[Profile]:
        """Get the profile owned by an account"""
        async with self.session_scope(session) as s:
            result = await s.execute(
                select(Profile).where(Profile.owner_id == str(owner_id))
            )
            return result.scalar_one_or_none()

    async def create_profile(self, display_name: str, session: Optional[AsyncSession] = None,
                             ladder_rank: Optional[int] = None, **fields) -> Profile:
        """Create a profile, appending it to the bottom of the ladder unless a rank is given"""
        async with self.session_scope(session, write=True) as s:
            if ladder_rank is None:
                result = await s.execute(select(func.coalesce(func.max(Profile.ladder_rank), 0)))
                ladder_rank = result.scalar() + 1

            profile = Profile(display_name=display_name, ladder_rank=ladder_rank, **fields)
            s.add(profile)
            await s.flush()
            await s.refresh(profile)
            return profile

    async def update_profile(self, profile_id: int, session: Optional[AsyncSession] = None,
                             **patch: Any) -> Optional[Profile]:
        """Apply a patch to a profile; returns None if the profile does not exist"""
        async with self.session_scope(session, write=True) as s:
            result = await s.execute(
                update(Profile)
                .where(Profile.id == profile_id)
                .values(**patch)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return await self.get_profile(profile_id, session=s)

    async def find_unclaimed_profile_by_name(self, display_name: str,
                                             session: Optional[AsyncSession] = None,
                                             for_update: bool = False) -> Optional[Profile]:
        """Find a ghost profile (no owner, no phone) by case-insensitive display name"""
        async with self.session_scope(session) as s:
            stmt = (
                select(Profile)
                .where(
                    func.lower(Profile.display_name) == display_name.strip().lower(),
                    Profile.owner_id.is_(None),
                    Profile.phone.is_(None)
                )
                .order_by(Profile.ladder_rank)
                .limit(1)
            )
            if for_update:
                stmt = stmt.with_for_update()
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def claim_profile(self, profile_id: int, owner_id: str,
                            session: Optional[AsyncSession] = None) -> Optional[Profile]:
        """Set the owner of an unclaimed profile; returns None if missing or already claimed"""
        async with self.session_scope(session, write=True) as s:
            result = await s.execute(
                update(Profile)
                .where(Profile.id == profile_id, Profile.owner_id.is_(None))
                .values(owner_id=str(owner_id))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return await self.get_profile(profile_id, session=s)

    async def get_ladder(self, limit: Optional[int] = None,
                         session: Optional[AsyncSession] = None) -> List[Profile]:
        """Get profiles ordered by ladder rank (best first)"""
        async with self.session_scope(session) as s:
            query = select(Profile).order_by(Profile.ladder_rank.asc())
            if limit:
                query = query.limit(limit)
            result = await s.execute(query)
            return list(result.scalars().all())

    async def get_points_leaderboard(self, limit: Optional[int] = None,
                                     session: Optional[AsyncSession] = None) -> List[Profile]:
        """Get profiles ordered by points, Fargo rating breaking ties"""
        async with self.session_scope(session) as s:
            query = select(Profile).order_by(Profile.points.desc(), Profile.fargo_rating.desc())
            if limit:
                query = query.limit(limit)
            result = await s.execute(query)
            return list(result.scalars().all())

    async def get_push_tokens(self, exclude_ids: Iterable[int] = (),
                              session: Optional[AsyncSession] = None) -> List[str]:
        """Get every registered push token"""
        async with self.session_scope(session) as s:
            query = select(Profile.expo_push_token).where(Profile.expo_push_token.isnot(None))
            exclude_ids = list(exclude_ids)
            if exclude_ids:
                query = query.where(Profile.id.notin_(exclude_ids))
            result = await s.execute(query)
            return [token for token in result.scalars().all() if token]

    # Challenge operations
    async def get_challenge(self, challenge_id: int, session: Optional[AsyncSession] = None,
                            for_update: bool = False) -> Optional[Challenge]:
        """Get a challenge by ID with both players loaded"""
        async with self.session_scope(session) as s:
            stmt = (
                select(Challenge)
                .options(
                    selectinload(Challenge.challenger),
                    selectinload(Challenge.challenged)
                )
                .where(Challenge.id == challenge_id)
                .execution_options(populate_existing=True)
            )
            if for_update:
                stmt = stmt.with_for_update()
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def create_challenge(self, session: Optional[AsyncSession] = None, **fields) -> Challenge:
        """Insert a challenge row"""
        async with self.session_scope(session, write=True) as s:
            challenge = Challenge(**fields)
            s.add(challenge)
            await s.flush()
            return await self.get_challenge(challenge.id, session=s)

    async def compare_and_set_challenge(self, challenge_id: int,
                                        expected: Iterable[ChallengeStatus],
                                        session: AsyncSession, **values: Any) -> bool:
        """
        Update a challenge only if its status is still one of ``expected``.

        Returns False when another writer changed the status first, in which
        case nothing was written.
        """
        expected = list(expected)
        result = await session.execute(
            update(Challenge)
            .where(Challenge.id == challenge_id, Challenge.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_challenges(self, challenge_filter: Optional[ChallengeFilter] = None,
                              session: Optional[AsyncSession] = None) -> List[Challenge]:
        """List challenges matching a filter, players eagerly loaded"""
        challenge_filter = challenge_filter or ChallengeFilter()
        async with self.session_scope(session) as s:
            query = select(Challenge).options(
                selectinload(Challenge.challenger),
                selectinload(Challenge.challenged)
            )

            pid = challenge_filter.profile_id
            if pid is not None:
                if challenge_filter.role == "challenger":
                    query = query.where(Challenge.challenger_id == pid)
                elif challenge_filter.role == "challenged":
                    query = query.where(Challenge.challenged_id == pid)
                else:
                    query = query.where(or_(Challenge.challenger_id == pid, Challenge.challenged_id == pid))

            if challenge_filter.statuses is not None:
                query = query.where(Challenge.status.in_(list(challenge_filter.statuses)))

            order = Challenge.created_at.desc() if challenge_filter.newest_first else Challenge.created_at.asc()
            query = query.order_by(order, Challenge.id.desc() if challenge_filter.newest_first else Challenge.id.asc())

            if challenge_filter.limit:
                query = query.limit(challenge_filter.limit)

            result = await s.execute(query)
            return list(result.scalars().all())

    async def get_overdue_challenge_ids(self, now: datetime,
                                        session: Optional[AsyncSession] = None) -> List[int]:
        """Ids of pending challenges whose deadline has passed"""
        async with self.session_scope(session) as s:
            result = await s.execute(
                select(Challenge.id).where(
                    Challenge.status == ChallengeStatus.PENDING,
                    Challenge.deadline < now
                )
            )
            return list(result.scalars().all())

    # Activity operations
    async def add_activity(self, user_id: int, action_type: ActivityType, details: Optional[dict] = None,
                           session: Optional[AsyncSession] = None) -> Activity:
        """Append an activity record"""
        async with self.session_scope(session, write=True) as s:
            activity = Activity(user_id=user_id, action_type=action_type, details=details or {})
            s.add(activity)
            await s.flush()
            await s.refresh(activity)
            return activity

    async def list_activities(self, limit: int = 20, user_id: Optional[int] = None,
                              session: Optional[AsyncSession] = None) -> List[Activity]:
        """Get the most recent activity records"""
        async with self.session_scope(session) as s:
            query = select(Activity).order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit)
            if user_id is not None:
                query = query.where(Activity.user_id == user_id)
            result = await s.execute(query)
            return list(result.scalars().all())
