"""
Live scoreboard for a match in progress.

Each client holding a session publishes its full score pair on every change and
overwrites its own pair with whatever other clients send on the match channel.
A client ignores the echo of its own messages. The last message received
wins: there is no sequencing, so two people tapping at the same moment can
clobber each other. Scores become authoritative only when the
match is finalized.
"""

import inspect
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ladder.constants import ChannelConstants
from ladder.services.realtime import RealtimeBroker, Subscription, match_channel
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)

ScoreListener = Callable[['ScoreState'], Any]


@dataclass(frozen=True)
class ScoreState:
    score1: int = 0
    score2: int = 0

    def to_payload(self) -> Dict[str, int]:
        return {'score1': self.score1, 'score2': self.score2}


class LiveScoreSession:
    """Broadcast-synchronized score pair for one challenge."""

    def __init__(self, challenge_id: int, broker: RealtimeBroker, games_to_win: Optional[int] = None):
        self.challenge_id = challenge_id
        self.broker = broker
        self.games_to_win = games_to_win
        self.client_id = uuid.uuid4().hex
        self.state = ScoreState()
        self._subscription: Optional[Subscription] = None
        self._listeners: List[ScoreListener] = []

    @property
    def channel_key(self) -> str:
        return match_channel(self.challenge_id)

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    @property
    def leader(self) -> Optional[int]:
        """1 or 2 for the side ahead, None when level"""
        if self.state.score1 == self.state.score2:
            return None
        return 1 if self.state.score1 > self.state.score2 else 2

    @property
    def target_reached(self) -> bool:
        if not self.games_to_win:
            return False
        return max(self.state.score1, self.state.score2) >= self.games_to_win

    def add_listener(self, listener: ScoreListener) -> None:
        """Register a callback run with the new state after every change, local or remote"""
        self._listeners.append(listener)

    def remove_listener(self, listener: ScoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def open(self) -> 'LiveScoreSession':
        if self._subscription is None:
            self._subscription = await self.broker.subscribe(self.channel_key, self._on_message)
            logger.debug(f"Live score session opened for challenge {self.challenge_id}")
        return self

    async def close(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
            logger.debug(f"Live score session closed for challenge {self.challenge_id}")
        self._listeners.clear()

    async def adjust(self, side: int, delta: int) -> ScoreState:
        """Add ``delta`` to one side (1 = challenger, 2 = challenged), never going below zero"""
        if side not in (1, 2):
            raise ValueError(f"side must be 1 or 2, got {side}")

        if side == 1:
            new_state = ScoreState(max(0, self.state.score1 + delta), self.state.score2)
        else:
            new_state = ScoreState(self.state.score1, max(0, self.state.score2 + delta))
        return await self._apply_and_publish(new_state)

    async def set_scores(self, score1: int, score2: int) -> ScoreState:
        return await self._apply_and_publish(ScoreState(max(0, score1), max(0, score2)))

    async def reset(self, confirm: Callable[[], Awaitable[bool]]) -> bool:
        """
        Zero both scores after the caller confirms.

        Returns True if the reset was confirmed and published.
        """
        confirmed = confirm()
        if inspect.isawaitable(confirmed):
            confirmed = await confirmed
        if not confirmed:
            return False

        await self._apply_and_publish(ScoreState())
        logger.info(f"Scores reset for challenge {self.challenge_id}")
        return True

    async def _apply_and_publish(self, new_state: ScoreState) -> ScoreState:
        await self._set_state(new_state)
        payload = dict(new_state.to_payload(), event=ChannelConstants.SCORE_UPDATE_EVENT, sender=self.client_id)
        await self.broker.publish(self.channel_key, payload)
        return self.state

    async def _on_message(self, payload: Dict[str, Any]) -> None:
        if payload.get('event', ChannelConstants.SCORE_UPDATE_EVENT) != ChannelConstants.SCORE_UPDATE_EVENT:
            return
        # Our own publish coming back; local state is already newer or equal
        if payload.get('sender') == self.client_id:
            return
        try:
            new_state = ScoreState(int(payload['score1']), int(payload['score2']))
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Ignoring malformed score update on {self.channel_key}: {payload}")
            return
        await self._set_state(new_state)

    async def _set_state(self, new_state: ScoreState) -> None:
        self.state = new_state
        for listener in list(self._listeners):
            try:
                result = listener(new_state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Score listener failed for challenge {self.challenge_id}: {e}")


class LiveScoreHub:
    """Keeps at most one open session per challenge in this process."""

    def __init__(self, broker: RealtimeBroker):
        self.broker = broker
        self._sessions: Dict[int, LiveScoreSession] = {}

    def get(self, challenge_id: int) -> Optional[LiveScoreSession]:
        return self._sessions.get(challenge_id)

    async def open_session(self, challenge_id: int, games_to_win: Optional[int] = None) -> LiveScoreSession:
        session = self._sessions.get(challenge_id)
        if session is None:
            session = LiveScoreSession(challenge_id, self.broker, games_to_win)
            self._sessions[challenge_id] = session
        await session.open()
        return session

    async def discard(self, challenge_id: int) -> None:
        session = self._sessions.pop(challenge_id, None)
        if session is not None:
            await session.close()

    async def release(self, challenge_id: int) -> bool:
        """Discard the session once nothing is listening to it; returns True if it was discarded"""
        session = self._sessions.get(challenge_id)
        if session is None or session.listener_count:
            return False
        await self.discard(challenge_id)
        logger.debug(f"Released idle live score session for challenge {challenge_id}")
        return True

    async def close_all(self) -> None:
        for challenge_id in list(self._sessions):
            await self.discard(challenge_id)

    def __contains__(self, challenge_id: int) -> bool:
        return challenge_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
