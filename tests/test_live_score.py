"""Live scoreboard sessions over the in-process broker."""
import json

import pytest

from conftest import start_live_match
from ladder.constants import ChannelConstants
from ladder.operations.challenge_operations import ChallengeOperations
from ladder.services.live_score import LiveScoreHub, LiveScoreSession, ScoreState
from ladder.services.realtime import InProcessBroker, RealtimeBroker, entity_channel, match_channel


class QueuedBroker(RealtimeBroker):
    """Holds published messages until the test delivers them, like a network hop."""

    def __init__(self):
        super().__init__()
        self.queue = []

    async def publish(self, channel_key, payload):
        self.queue.append((channel_key, json.loads(json.dumps(payload))))

    async def deliver(self, count=None):
        count = len(self.queue) if count is None else count
        for _ in range(count):
            channel_key, payload = self.queue.pop(0)
            await self._dispatch(channel_key, payload)


@pytest.fixture
def hub(broker) -> LiveScoreHub:
    return LiveScoreHub(broker)


async def open_pair(broker, challenge_id=1):
    first = await LiveScoreSession(challenge_id, broker, games_to_win=7).open()
    second = await LiveScoreSession(challenge_id, broker, games_to_win=7).open()
    return first, second


class TestLiveScoreSession:
    @pytest.mark.asyncio
    async def test_two_viewers_stay_in_sync(self, broker):
        first, second = await open_pair(broker)

        await first.adjust(1, 1)
        await first.adjust(1, 1)
        await second.adjust(2, 1)

        assert first.state == ScoreState(2, 1)
        assert second.state == ScoreState(2, 1)
        assert first.leader == 1

    @pytest.mark.asyncio
    async def test_other_matches_are_unaffected(self, broker):
        mine = await LiveScoreSession(1, broker).open()
        other = await LiveScoreSession(2, broker).open()

        await mine.adjust(2, 3)

        assert other.state == ScoreState(0, 0)
        assert other.leader is None

    @pytest.mark.asyncio
    async def test_scores_never_go_negative(self, broker):
        session = await LiveScoreSession(1, broker).open()
        await session.adjust(1, -1)
        await session.adjust(2, 1)
        await session.adjust(2, -5)
        assert session.state == ScoreState(0, 0)

    @pytest.mark.asyncio
    async def test_bad_side(self, broker):
        session = await LiveScoreSession(1, broker).open()
        with pytest.raises(ValueError):
            await session.adjust(3, 1)

    @pytest.mark.asyncio
    async def test_last_write_wins(self, broker):
        first, second = await open_pair(broker)
        await first.set_scores(5, 4)

        # A stale pair from another client overwrites local state as-is
        await broker.publish(match_channel(1), {
            'event': ChannelConstants.SCORE_UPDATE_EVENT, 'score1': 3, 'score2': 3, 'sender': 'elsewhere'
        })

        assert first.state == ScoreState(3, 3)
        assert second.state == ScoreState(3, 3)

    @pytest.mark.asyncio
    async def test_reset_requires_confirmation(self, broker):
        first, second = await open_pair(broker)
        await first.set_scores(4, 2)

        assert await first.reset(lambda: False) is False
        assert second.state == ScoreState(4, 2)

        async def confirm():
            return True

        assert await first.reset(confirm) is True
        assert second.state == ScoreState(0, 0)

    @pytest.mark.asyncio
    async def test_malformed_and_foreign_messages_ignored(self, broker):
        session = await LiveScoreSession(1, broker).open()
        await session.set_scores(2, 2)

        await broker.publish(match_channel(1), {'event': ChannelConstants.SCORE_UPDATE_EVENT, 'score1': 'x'})
        await broker.publish(match_channel(1), {'event': 'chat', 'score1': 9, 'score2': 9})

        assert session.state == ScoreState(2, 2)

    @pytest.mark.asyncio
    async def test_target_reached_and_listeners(self, broker):
        session = await LiveScoreSession(1, broker, games_to_win=3).open()
        seen = []
        session.add_listener(seen.append)

        await session.set_scores(2, 3)

        assert session.target_reached
        assert seen[-1] == ScoreState(2, 3)

        session.remove_listener(seen.append)
        await session.adjust(1, 1)
        assert seen[-1] == ScoreState(2, 3)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_state(self, broker):
        session = await LiveScoreSession(1, broker).open()

        def explode(state):
            raise RuntimeError("render failed")

        session.add_listener(explode)
        await session.adjust(1, 1)
        assert session.state == ScoreState(1, 0)

    @pytest.mark.asyncio
    async def test_closed_session_stops_receiving(self, broker):
        first, second = await open_pair(broker)
        await second.close()

        await first.adjust(1, 2)

        assert not second.is_open
        assert second.state == ScoreState(0, 0)
        assert broker.subscriber_count(match_channel(1)) == 1

    @pytest.mark.asyncio
    async def test_late_echo_does_not_roll_back_local_taps(self):
        broker = QueuedBroker()
        first, second = await open_pair(broker)

        await first.adjust(1, 1)
        await first.adjust(1, 1)
        await broker.deliver(1)
        await first.adjust(1, 1)
        await broker.deliver()

        assert first.state == ScoreState(3, 0)
        assert second.state == ScoreState(3, 0)

    @pytest.mark.asyncio
    async def test_delayed_updates_from_others_still_apply(self):
        broker = QueuedBroker()
        first, second = await open_pair(broker)

        await second.set_scores(4, 2)
        assert first.state == ScoreState(0, 0)

        await broker.deliver()
        assert first.state == ScoreState(4, 2)
        assert second.state == ScoreState(4, 2)


class TestLiveScoreHub:
    @pytest.mark.asyncio
    async def test_one_session_per_challenge(self, hub, broker):
        first = await hub.open_session(5, games_to_win=7)
        again = await hub.open_session(5)

        assert first is again
        assert 5 in hub
        assert len(hub) == 1
        assert broker.subscriber_count(match_channel(5)) == 1

    @pytest.mark.asyncio
    async def test_discard_unsubscribes(self, hub, broker):
        await hub.open_session(5)
        await hub.open_session(6)

        await hub.discard(5)
        assert 5 not in hub
        assert broker.subscriber_count(match_channel(5)) == 0

        await hub.close_all()
        assert len(hub) == 0
        assert broker.subscriber_count(match_channel(6)) == 0

    @pytest.mark.asyncio
    async def test_release_waits_for_last_listener(self, hub, broker):
        session = await hub.open_session(5)
        listener = lambda state: None
        session.add_listener(listener)

        assert await hub.release(5) is False
        assert 5 in hub

        session.remove_listener(listener)
        assert await hub.release(5) is True
        assert 5 not in hub
        assert broker.subscriber_count(match_channel(5)) == 0

        assert await hub.release(42) is False

    @pytest.mark.asyncio
    async def test_finalize_discards_the_session(self, db, clock, ladder, broker):
        hub = LiveScoreHub(broker)
        ops = ChallengeOperations(db, score_hub=hub, clock=clock)
        live = await start_live_match(ops, ladder[7], ladder[4])

        session = await hub.open_session(live.id, games_to_win=live.games_to_win)
        await session.set_scores(7, 4)

        await ops.finalize(live.id, session.state.score1, session.state.score2)

        assert live.id not in hub
        assert broker.subscriber_count(match_channel(live.id)) == 0


class TestInProcessBroker:
    @pytest.mark.asyncio
    async def test_subscribers_get_copies(self):
        broker = InProcessBroker()
        received = []
        await broker.subscribe("match:1", received.append)

        payload = {'score1': 1, 'score2': 0}
        await broker.publish("match:1", payload)
        received[0]['score1'] = 99

        assert payload["score1"] == 1

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        broker = InProcessBroker()
        received = []

        async def explode(payload):
            raise RuntimeError("boom")

        await broker.subscribe("match:1", explode)
        await broker.subscribe("match:1", received.append)
        await broker.publish("match:1", {'score1': 1, 'score2': 1})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_entity_changes(self):
        broker = InProcessBroker()
        changes = []
        subscription = await broker.subscribe_to_entity_changes("challenges", changes.append)

        await broker.publish_entity_change("challenges", "UPDATE", {'id': 3, 'status': 'live'})
        await subscription.unsubscribe()
        await broker.publish_entity_change("challenges", "UPDATE", {'id': 3, 'status': 'completed'})

        assert changes == [{'table': 'challenges', 'op': 'UPDATE', 'record': {'id': 3, 'status': 'live'}}]
        assert broker.subscriber_count(entity_channel("challenges")) == 0
