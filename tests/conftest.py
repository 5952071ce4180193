"""Shared pytest fixtures for the ladder tests."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest
import pytest_asyncio

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ladder.database.database import Database
from ladder.database.models import Profile
from ladder.operations.challenge_operations import ChallengeOperations
from ladder.operations.profile_operations import ProfileOperations
from ladder.services.realtime import InProcessBroker


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database file per test."""
    database = Database(f"sqlite:///{tmp_path / 'ladder_test.db'}")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def broker() -> InProcessBroker:
    return InProcessBroker()


@pytest.fixture
def profile_ops(db, clock) -> ProfileOperations:
    return ProfileOperations(db, clock=clock)


@pytest.fixture
def challenge_ops(db, clock) -> ChallengeOperations:
    return ChallengeOperations(db, clock=clock)


@pytest_asyncio.fixture
async def ladder(profile_ops) -> List[Profile]:
    """Ten claimed players holding ranks 1..10, in rank order."""
    players = []
    for i in range(1, 11):
        result = await profile_ops.claim_or_create_profile(f"acct-{i}", f"Player {i}")
        players.append(result.profile)
    return players


async def start_live_match(challenge_ops: ChallengeOperations, challenger: Profile, target: Profile,
                           games_to_win: int = 7):
    """Create, accept and start a challenge; returns the live challenge."""
    challenge = await challenge_ops.create_challenge(challenger.id, target.id, games_to_win=games_to_win)
    await challenge_ops.respond(challenge.id, target.id, "accept")
    return await challenge_ops.go_live(challenge.id, actor_id=challenger.id)
