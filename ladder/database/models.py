from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON,
    ForeignKey, Enum as SQLEnum, CheckConstraint, TypeDecorator
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from ladder.utils.time_utils import utcnow

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC (SQLite drops tzinfo on the way in)."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class GameType(Enum):
    EIGHT_BALL = "8-ball"
    NINE_BALL = "9-ball"
    TEN_BALL = "10-ball"

    @classmethod
    def parse(cls, value) -> 'GameType':
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class ChallengeStatus(Enum):
    PENDING = "pending"
    NEGOTIATING = "negotiating"    # Accepted, venue/time being finalized
    SCHEDULED = "scheduled"        # Legacy rows only; folded into NEGOTIATING
    LIVE = "live"
    COMPLETED = "completed"
    FORFEITED = "forfeited"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    ChallengeStatus.COMPLETED,
    ChallengeStatus.FORFEITED,
    ChallengeStatus.EXPIRED,
})

OPEN_STATUSES = frozenset({
    ChallengeStatus.PENDING,
    ChallengeStatus.NEGOTIATING,
    ChallengeStatus.SCHEDULED,
    ChallengeStatus.LIVE,
})

ALLOWED_TRANSITIONS = {
    ChallengeStatus.PENDING: frozenset({
        ChallengeStatus.NEGOTIATING, ChallengeStatus.FORFEITED, ChallengeStatus.EXPIRED
    }),
    ChallengeStatus.NEGOTIATING: frozenset({ChallengeStatus.LIVE}),
    ChallengeStatus.SCHEDULED: frozenset({ChallengeStatus.LIVE}),
    ChallengeStatus.LIVE: frozenset({ChallengeStatus.COMPLETED}),
}


def can_transition(current: ChallengeStatus, target: ChallengeStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_for(target: ChallengeStatus) -> List[ChallengeStatus]:
    """Statuses a challenge may move to ``target`` from, in declaration order"""
    return [status for status in ChallengeStatus if can_transition(status, target)]


class ActivityType(Enum):
    CHALLENGE_CREATED = "CHALLENGE_CREATED"
    CHALLENGE_ACCEPTED = "CHALLENGE_ACCEPTED"
    CHALLENGE_DECLINED = "CHALLENGE_DECLINED"
    MATCH_LIVE = "MATCH_LIVE"
    MATCH_COMPLETED = "MATCH_COMPLETED"
    RANK_CHANGED = "RANK_CHANGED"
    PROFILE_CLAIMED = "PROFILE_CLAIMED"


class Profile(Base):
    __tablename__ = 'profiles'

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), unique=True, nullable=True, index=True)  # Null while unclaimed
    display_name = Column(String(100), nullable=False, index=True)
    phone = Column(String(32), nullable=True)
    avatar_url = Column(String(500), nullable=True)

    # Ladder standing
    fargo_rating = Column(Integer, default=0, nullable=False)  # Externally supplied, display only
    ladder_rank = Column(Integer, unique=True, nullable=False, index=True)
    points = Column(Integer, default=0, nullable=False)
    cooldown_until = Column(UTCDateTime, nullable=True)

    # Push delivery
    expo_push_token = Column(String(255), nullable=True)

    # Metadata
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    activities = relationship("Activity", back_populates="profile")

    __table_args__ = (
        CheckConstraint('points >= 0', name='ck_profiles_points_non_negative'),
    )

    @property
    def is_claimed(self) -> bool:
        return self.owner_id is not None

    @property
    def is_ghost(self) -> bool:
        return self.owner_id is None and self.phone is None

    def in_cooldown(self, now: Optional[datetime] = None) -> bool:
        if not self.cooldown_until:
            return False
        return self.cooldown_until > (now or utcnow())

    def __repr__(self):
        return f"<Profile(id={self.id}, name='{self.display_name}', rank={self.ladder_rank})>"


class Challenge(Base):
    __tablename__ = 'challenges'

    id = Column(Integer, primary_key=True)
    challenger_id = Column(Integer, ForeignKey('profiles.id'), nullable=False, index=True)
    challenged_id = Column(Integer, ForeignKey('profiles.id'), nullable=False, index=True)

    # Match terms
    game_type = Column(SQLEnum(GameType, values_callable=lambda e: [m.value for m in e]),
                       nullable=False, default=GameType.EIGHT_BALL)
    games_to_win = Column(Integer, nullable=False, default=7)
    venue = Column(Text, default='TBD')
    proposed_time = Column(UTCDateTime, nullable=True)

    status = Column(SQLEnum(ChallengeStatus, values_callable=lambda e: [m.value for m in e]),
                    nullable=False, default=ChallengeStatus.PENDING, index=True)
    deadline = Column(UTCDateTime, nullable=False)

    # Results (filled at completion)
    challenger_score = Column(Integer, nullable=True)
    challenged_score = Column(Integer, nullable=True)
    winner_id = Column(Integer, ForeignKey('profiles.id'), nullable=True)

    stream_url = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    responded_at = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    challenger = relationship("Profile", foreign_keys=[challenger_id])
    challenged = relationship("Profile", foreign_keys=[challenged_id])
    winner = relationship("Profile", foreign_keys=[winner_id])

    __table_args__ = (
        CheckConstraint('challenger_id != challenged_id', name='ck_challenges_distinct_players'),
        CheckConstraint('games_to_win > 0', name='ck_challenges_games_to_win_positive'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Pending past its deadline; becomes EXPIRED on the next read or sweep."""
        if self.status != ChallengeStatus.PENDING or not self.deadline:
            return False
        return (now or utcnow()) > self.deadline

    def involves(self, profile_id: int) -> bool:
        return profile_id in (self.challenger_id, self.challenged_id)

    def opponent_of(self, profile_id: int) -> int:
        return self.challenged_id if profile_id == self.challenger_id else self.challenger_id

    @property
    def loser_id(self) -> Optional[int]:
        if self.winner_id is None:
            return None
        return self.opponent_of(self.winner_id)

    @property
    def final_score(self) -> Optional[str]:
        if self.challenger_score is None or self.challenged_score is None:
            return None
        return f"{self.challenger_score} - {self.challenged_score}"

    def __repr__(self):
        return (f"<Challenge(id={self.id}, {self.challenger_id} vs {self.challenged_id}, "
                f"status={self.status.value})>")


class Activity(Base):
    __tablename__ = 'activities'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False, index=True)
    action_type = Column(SQLEnum(ActivityType, values_callable=lambda e: [m.value for m in e]),
                         nullable=False)
    # "metadata" is reserved on declarative classes
    details = Column('metadata', JSON, default=dict)
    created_at = Column(UTCDateTime, default=utcnow, index=True)

    profile = relationship("Profile", back_populates="activities")

    def __repr__(self):
        return f"<Activity(id={self.id}, user_id={self.user_id}, type={self.action_type.value})>"
