"""Challenge lifecycle: creation, responses, going live and expiry."""
import asyncio
from datetime import timedelta

import pytest

from conftest import start_live_match
from ladder.config import Config
from ladder.database.models import ChallengeStatus, GameType, can_transition, sources_for
from ladder.utils.exceptions import (
    ChallengeNotFoundError, ErrorKind, ForbiddenError, IneligibleError, IneligibleReason,
    InvalidStateError, ProfileNotFoundError, ValidationError
)


class TestCreateChallenge:
    @pytest.mark.asyncio
    async def test_creates_pending_challenge_with_defaults(self, challenge_ops, ladder, clock):
        challenger, target = ladder[7], ladder[4]  # #8 -> #5

        challenge = await challenge_ops.create_challenge(challenger.id, target.id)

        assert challenge.status == ChallengeStatus.PENDING
        assert challenge.challenger_id == challenger.id
        assert challenge.challenged_id == target.id
        assert challenge.game_type == GameType.EIGHT_BALL
        assert challenge.games_to_win == Config.DEFAULT_GAMES_TO_WIN
        assert challenge.venue == Config.DEFAULT_VENUE
        assert challenge.deadline == clock.now + timedelta(days=Config.CHALLENGE_DEADLINE_DAYS)
        assert challenge.proposed_time == clock.now + timedelta(days=Config.DEFAULT_PROPOSED_TIME_DAYS)
        assert challenge.winner_id is None

    @pytest.mark.asyncio
    async def test_awards_challenge_points(self, challenge_ops, profile_ops, ladder):
        await challenge_ops.create_challenge(ladder[3].id, ladder[2].id)

        challenger = await profile_ops.get_profile(ladder[3].id)
        target = await profile_ops.get_profile(ladder[2].id)
        assert challenger.points == Config.POINTS_CHALLENGE
        assert target.points == 0

    @pytest.mark.asyncio
    async def test_custom_terms(self, challenge_ops, ladder, clock):
        when = clock.now + timedelta(days=5)
        challenge = await challenge_ops.create_challenge(
            ladder[1].id, ladder[0].id, game_type="9-ball", games_to_win=9,
            proposed_time=when, venue="  Capital Billiards  "
        )
        assert challenge.game_type == GameType.NINE_BALL
        assert challenge.games_to_win == 9
        assert challenge.venue == "Capital Billiards"
        assert challenge.proposed_time == when

    @pytest.mark.asyncio
    async def test_out_of_range_is_rejected(self, challenge_ops, ladder):
        with pytest.raises(IneligibleError) as exc_info:
            await challenge_ops.create_challenge(ladder[9].id, ladder[1].id)  # #10 -> #2
        assert exc_info.value.reason == IneligibleReason.OUT_OF_RANGE

    @pytest.mark.asyncio
    async def test_rank_one_can_challenge_the_bottom(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[0].id, ladder[9].id)
        assert challenge.status == ChallengeStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejected_challenge_awards_nothing(self, challenge_ops, profile_ops, ladder):
        with pytest.raises(IneligibleError):
            await challenge_ops.create_challenge(ladder[9].id, ladder[1].id)
        assert (await profile_ops.get_profile(ladder[9].id)).points == 0

    @pytest.mark.asyncio
    async def test_self_challenge_is_invalid_input(self, challenge_ops, ladder):
        with pytest.raises(ValidationError) as exc_info:
            await challenge_ops.create_challenge(ladder[2].id, ladder[2].id)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_unknown_target(self, challenge_ops, ladder):
        with pytest.raises(ProfileNotFoundError):
            await challenge_ops.create_challenge(ladder[2].id, 9999)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("games_to_win", [2, 14])
    async def test_race_outside_bounds(self, challenge_ops, ladder, games_to_win):
        with pytest.raises(ValidationError):
            await challenge_ops.create_challenge(ladder[2].id, ladder[1].id, games_to_win=games_to_win)

    @pytest.mark.asyncio
    async def test_unknown_game_type(self, challenge_ops, ladder):
        with pytest.raises(ValidationError):
            await challenge_ops.create_challenge(ladder[2].id, ladder[1].id, game_type="snooker")


class TestRespond:
    @pytest.mark.asyncio
    async def test_accept_moves_to_negotiating(self, challenge_ops, ladder, clock):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)

        accepted = await challenge_ops.respond(challenge.id, ladder[3].id, "accept", venue="Hall B")

        assert accepted.status == ChallengeStatus.NEGOTIATING
        assert accepted.venue == "Hall B"
        assert accepted.responded_at == clock.now

    @pytest.mark.asyncio
    async def test_decline_forfeits(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        declined = await challenge_ops.respond(challenge.id, ladder[3].id, "decline")
        assert declined.status == ChallengeStatus.FORFEITED
        assert declined.is_terminal

    @pytest.mark.asyncio
    async def test_only_target_may_respond(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)

        with pytest.raises(ForbiddenError):
            await challenge_ops.respond(challenge.id, ladder[5].id, "accept")
        with pytest.raises(ForbiddenError):
            await challenge_ops.respond(challenge.id, ladder[0].id, "accept")

        assert (await challenge_ops.get_challenge(challenge.id)).status == ChallengeStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_response_is_invalid_state(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        await challenge_ops.respond(challenge.id, ladder[3].id, "decline")

        with pytest.raises(InvalidStateError) as exc_info:
            await challenge_ops.respond(challenge.id, ladder[3].id, "accept")
        assert exc_info.value.current_status == "forfeited"

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, challenge_ops, ladder):
        with pytest.raises(ChallengeNotFoundError):
            await challenge_ops.respond(424242, ladder[0].id, "accept")

    @pytest.mark.asyncio
    async def test_bad_decision(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        with pytest.raises(ValidationError):
            await challenge_ops.respond(challenge.id, ladder[3].id, "maybe")

    @pytest.mark.asyncio
    async def test_concurrent_accept_and_decline_apply_once(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)

        results = await asyncio.gather(
            challenge_ops.respond(challenge.id, ladder[3].id, "accept"),
            challenge_ops.respond(challenge.id, ladder[3].id, "decline"),
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateError)

        final = await challenge_ops.get_challenge(challenge.id)
        assert final.status == successes[0].status


class TestExpiry:
    @pytest.mark.asyncio
    async def test_respond_after_deadline_expires(self, challenge_ops, ladder, clock):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        clock.advance(days=Config.CHALLENGE_DEADLINE_DAYS, seconds=1)

        with pytest.raises(InvalidStateError) as exc_info:
            await challenge_ops.respond(challenge.id, ladder[3].id, "accept")
        assert exc_info.value.current_status == "expired"

        # The expiry was committed even though respond failed
        assert (await challenge_ops.get_challenge(challenge.id)).status == ChallengeStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_read_after_deadline_expires(self, challenge_ops, ladder, clock):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        clock.advance(days=15)

        assert (await challenge_ops.get_challenge(challenge.id)).status == ChallengeStatus.EXPIRED
        assert await challenge_ops.get_pending_for_profile(ladder[3].id) == []

    @pytest.mark.asyncio
    async def test_pending_before_deadline_is_untouched(self, challenge_ops, ladder, clock):
        challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        clock.advance(days=13)
        assert (await challenge_ops.get_challenge(challenge.id)).status == ChallengeStatus.PENDING

    @pytest.mark.asyncio
    async def test_sweep_only_touches_overdue_pending(self, challenge_ops, ladder, clock):
        stale = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
        accepted = await challenge_ops.create_challenge(ladder[6].id, ladder[4].id)
        await challenge_ops.respond(accepted.id, ladder[4].id, "accept")

        clock.advance(days=10)
        fresh = await challenge_ops.create_challenge(ladder[8].id, ladder[7].id)
        clock.advance(days=5)

        expired = await challenge_ops.expire_overdue_challenges()

        assert expired == [stale.id]
        assert (await challenge_ops.get_challenge(accepted.id)).status == ChallengeStatus.NEGOTIATING
        assert (await challenge_ops.get_challenge(fresh.id)).status == ChallengeStatus.PENDING

        # A second sweep finds nothing new
        assert await challenge_ops.expire_overdue_challenges() == []


class TestGoLive:
    @pytest.mark.asyncio
    async def test_go_live_from_negotiating(self, challenge_ops, ladder, clock):
        challenge = await challenge_ops.create_challenge(ladder[2].id, ladder[1].id)
        await challenge_ops.respond(challenge.id, ladder[1].id, "accept")

        live = await challenge_ops.go_live(challenge.id, actor_id=ladder[1].id, stream_url="https://twitch.tv/pool")

        assert live.status == ChallengeStatus.LIVE
        assert live.started_at == clock.now
        assert live.stream_url == "https://twitch.tv/pool"

    @pytest.mark.asyncio
    async def test_go_live_from_pending_is_invalid(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[2].id, ladder[1].id)
        with pytest.raises(InvalidStateError):
            await challenge_ops.go_live(challenge.id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_go_live(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[2].id, ladder[1].id)
        await challenge_ops.respond(challenge.id, ladder[1].id, "accept")
        with pytest.raises(ForbiddenError):
            await challenge_ops.go_live(challenge.id, actor_id=ladder[6].id)

    @pytest.mark.asyncio
    async def test_go_live_twice_is_invalid(self, challenge_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[2], ladder[1])
        with pytest.raises(InvalidStateError):
            await challenge_ops.go_live(live.id)

    @pytest.mark.asyncio
    async def test_stream_url_while_live(self, challenge_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[2], ladder[1])
        updated = await challenge_ops.set_stream_url(live.id, ladder[2].id, "https://youtu.be/abc")
        assert updated.stream_url == "https://youtu.be/abc"

        with pytest.raises(ValidationError):
            await challenge_ops.set_stream_url(live.id, ladder[2].id, "not a link")


class TestUpdateDetails:
    @pytest.mark.asyncio
    async def test_participant_updates_while_negotiating(self, challenge_ops, ladder, clock):
        challenge = await challenge_ops.create_challenge(ladder[2].id, ladder[1].id)
        await challenge_ops.respond(challenge.id, ladder[1].id, "accept")

        when = clock.now + timedelta(days=3)
        updated = await challenge_ops.update_details(challenge.id, ladder[2].id, venue="Corner Pocket", proposed_time=when)

        assert updated.venue == "Corner Pocket"
        assert updated.proposed_time == when
        assert updated.status == ChallengeStatus.NEGOTIATING

    @pytest.mark.asyncio
    async def test_not_allowed_while_pending(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[2].id, ladder[1].id)
        with pytest.raises(InvalidStateError):
            await challenge_ops.update_details(challenge.id, ladder[2].id, venue="Elsewhere")

    @pytest.mark.asyncio
    async def test_requires_a_change(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[2].id, ladder[1].id)
        await challenge_ops.respond(challenge.id, ladder[1].id, "accept")
        with pytest.raises(ValidationError):
            await challenge_ops.update_details(challenge.id, ladder[2].id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_inbox_and_outbox(self, challenge_ops, ladder):
        sent = await challenge_ops.create_challenge(ladder[4].id, ladder[3].id)
        received = await challenge_ops.create_challenge(ladder[6].id, ladder[4].id)

        outbox = await challenge_ops.list_for_profile(ladder[4].id, role="challenger")
        inbox = await challenge_ops.list_for_profile(ladder[4].id, role="challenged")
        everything = await challenge_ops.list_for_profile(ladder[4].id)

        assert [c.id for c in outbox] == [sent.id]
        assert [c.id for c in inbox] == [received.id]
        assert {c.id for c in everything} == {sent.id, received.id}
        assert [c.id for c in await challenge_ops.get_pending_for_profile(ladder[4].id)] == [received.id]

    @pytest.mark.asyncio
    async def test_live_list(self, challenge_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[2], ladder[1])
        await challenge_ops.create_challenge(ladder[5].id, ladder[4].id)

        assert [c.id for c in await challenge_ops.get_live_challenges()] == [live.id]

    @pytest.mark.asyncio
    async def test_unknown_role(self, challenge_ops, ladder):
        with pytest.raises(ValidationError):
            await challenge_ops.list_for_profile(ladder[0].id, role="spectator")


def test_transition_graph():
    assert can_transition(ChallengeStatus.PENDING, ChallengeStatus.NEGOTIATING)
    assert can_transition(ChallengeStatus.SCHEDULED, ChallengeStatus.LIVE)
    assert can_transition(ChallengeStatus.LIVE, ChallengeStatus.COMPLETED)
    assert not can_transition(ChallengeStatus.PENDING, ChallengeStatus.LIVE)
    assert not can_transition(ChallengeStatus.NEGOTIATING, ChallengeStatus.FORFEITED)
    for terminal in (ChallengeStatus.COMPLETED, ChallengeStatus.FORFEITED, ChallengeStatus.EXPIRED):
        assert not any(can_transition(terminal, target) for target in ChallengeStatus)


def test_expected_statuses_come_from_the_graph():
    assert sources_for(ChallengeStatus.LIVE) == [ChallengeStatus.NEGOTIATING, ChallengeStatus.SCHEDULED]
    assert sources_for(ChallengeStatus.COMPLETED) == [ChallengeStatus.LIVE]
    assert sources_for(ChallengeStatus.EXPIRED) == [ChallengeStatus.PENDING]
    assert sources_for(ChallengeStatus.PENDING) == []


@pytest.mark.asyncio
async def test_legacy_scheduled_row_can_go_live(challenge_ops, ladder, db):
    challenge = await challenge_ops.create_challenge(ladder[5].id, ladder[3].id)
    async with db.transaction() as session:
        assert await db.compare_and_set_challenge(
            challenge.id, [ChallengeStatus.PENDING], session, status=ChallengeStatus.SCHEDULED
        )

    live = await challenge_ops.go_live(challenge.id)
    assert live.status == ChallengeStatus.LIVE

    # Live matches no longer take detail changes
    with pytest.raises(InvalidStateError):
        await challenge_ops.update_details(challenge.id, ladder[5].id, venue="Elsewhere")
