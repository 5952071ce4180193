"""Finalizing matches and settling the ladder."""
import asyncio
from datetime import timedelta

import pytest

from conftest import start_live_match
from ladder.config import Config
from ladder.database.models import ChallengeStatus
from ladder.operations.challenge_operations import ChallengeOperations
from ladder.operations.settlement import RankSettlement
from ladder.utils.exceptions import (
    ErrorKind, ForbiddenError, IneligibleError, IneligibleReason, InvalidStateError,
    MatchNotCompleteError, SettlementFailedError, ValidationError
)


class SettleThenFail(RankSettlement):
    """Performs the swap, then blows up, to prove the whole finalize rolls back."""

    async def settle_match(self, winner_id, loser_id, session=None):
        await super().settle_match(winner_id, loser_id, session=session)
        raise SettlementFailedError(winner_id, loser_id, "simulated outage")


async def ranks(profile_ops):
    return {p.id: p.ladder_rank for p in await profile_ops.get_ladder()}


class TestFinalize:
    @pytest.mark.asyncio
    async def test_lower_ranked_winner_swaps_into_loser_rank(self, challenge_ops, profile_ops, ladder, clock):
        challenger, target = ladder[7], ladder[4]  # #8 beats #5
        live = await start_live_match(challenge_ops, challenger, target)
        before = await ranks(profile_ops)

        result = await challenge_ops.finalize(live.id, 7, 3, actor_id=challenger.id)

        assert result.challenge.status == ChallengeStatus.COMPLETED
        assert result.challenge.winner_id == challenger.id
        assert result.challenge.challenger_score == 7
        assert result.challenge.challenged_score == 3
        assert result.challenge.final_score == "7 - 3"
        assert result.challenge.completed_at == clock.now
        assert result.settlement.swapped

        after = await ranks(profile_ops)
        assert after[challenger.id] == 5
        assert after[target.id] == 8
        # Everyone else is untouched
        for profile_id, rank in before.items():
            if profile_id not in (challenger.id, target.id):
                assert after[profile_id] == rank

    @pytest.mark.asyncio
    async def test_higher_ranked_winner_keeps_ranks(self, challenge_ops, profile_ops, ladder):
        challenger, target = ladder[7], ladder[4]
        live = await start_live_match(challenge_ops, challenger, target)
        before = await ranks(profile_ops)

        result = await challenge_ops.finalize(live.id, 2, 7)

        assert result.winner_id == target.id
        assert not result.settlement.swapped
        assert await ranks(profile_ops) == before

    @pytest.mark.asyncio
    async def test_ranks_stay_unique_and_contiguous(self, challenge_ops, profile_ops, ladder, clock):
        live = await start_live_match(challenge_ops, ladder[9], ladder[4])
        await challenge_ops.finalize(live.id, 7, 0)

        report = await profile_ops.verify_rank_integrity()
        assert report.is_contiguous
        assert sorted((await ranks(profile_ops)).values()) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_points_and_cooldown(self, challenge_ops, profile_ops, ladder, clock):
        challenger, target = ladder[3], ladder[2]
        live = await start_live_match(challenge_ops, challenger, target)

        await challenge_ops.finalize(live.id, 7, 5)

        winner = await profile_ops.get_profile(challenger.id)
        loser = await profile_ops.get_profile(target.id)
        assert winner.points == Config.POINTS_CHALLENGE + Config.POINTS_PLAY + Config.POINTS_WIN
        assert loser.points == Config.POINTS_PLAY
        assert loser.cooldown_until == clock.now + timedelta(hours=Config.LOSS_COOLDOWN_HOURS)
        assert winner.cooldown_until is None

    @pytest.mark.asyncio
    async def test_loser_cooldown_blocks_then_lapses(self, challenge_ops, ladder, clock):
        challenger, target = ladder[3], ladder[2]
        live = await start_live_match(challenge_ops, challenger, target)
        await challenge_ops.finalize(live.id, 7, 5)

        clock.advance(hours=23)
        with pytest.raises(IneligibleError) as exc_info:
            await challenge_ops.create_challenge(target.id, ladder[1].id)
        assert exc_info.value.reason == IneligibleReason.IN_COOLDOWN
        assert exc_info.value.cooldown_remaining == timedelta(hours=1)

        clock.advance(hours=1, seconds=1)
        challenge = await challenge_ops.create_challenge(target.id, ladder[1].id)
        assert challenge.status == ChallengeStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_finalize_is_invalid_state(self, challenge_ops, profile_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[7], ladder[4])
        await challenge_ops.finalize(live.id, 7, 3)
        after_first = await ranks(profile_ops)

        with pytest.raises(InvalidStateError):
            await challenge_ops.finalize(live.id, 7, 3)
        assert await ranks(profile_ops) == after_first

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score1,score2", [(3, 3), (6, 2), (7, 7), (0, 0)])
    async def test_tie_or_nobody_at_target_is_not_complete(self, challenge_ops, ladder, score1, score2):
        live = await start_live_match(challenge_ops, ladder[7], ladder[4])

        with pytest.raises(MatchNotCompleteError) as exc_info:
            await challenge_ops.finalize(live.id, score1, score2)
        assert exc_info.value.kind == ErrorKind.MATCH_NOT_COMPLETE

        assert (await challenge_ops.get_challenge(live.id)).status == ChallengeStatus.LIVE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score1,score2", [(-1, 7), (7, -1), (9, 8), (7, 13)])
    async def test_impossible_scores_are_invalid_input(self, challenge_ops, ladder, score1, score2):
        live = await start_live_match(challenge_ops, ladder[7], ladder[4])
        with pytest.raises(ValidationError):
            await challenge_ops.finalize(live.id, score1, score2)

    @pytest.mark.asyncio
    async def test_score_over_target_still_counts(self, challenge_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[7], ladder[4])
        result = await challenge_ops.finalize(live.id, 4, 8)
        assert result.winner_id == ladder[4].id

    @pytest.mark.asyncio
    async def test_not_live_is_invalid_state(self, challenge_ops, ladder):
        challenge = await challenge_ops.create_challenge(ladder[7].id, ladder[4].id)
        with pytest.raises(InvalidStateError):
            await challenge_ops.finalize(challenge.id, 7, 0)

    @pytest.mark.asyncio
    async def test_outsider_cannot_finalize(self, challenge_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[7], ladder[4])
        with pytest.raises(ForbiddenError):
            await challenge_ops.finalize(live.id, 7, 0, actor_id=ladder[0].id)


class TestConcurrentFinalize:
    @pytest.mark.asyncio
    async def test_same_match_finalized_twice_at_once(self, challenge_ops, profile_ops, ladder):
        live = await start_live_match(challenge_ops, ladder[7], ladder[4])

        results = await asyncio.gather(
            challenge_ops.finalize(live.id, 7, 3, actor_id=ladder[7].id),
            challenge_ops.finalize(live.id, 2, 7, actor_id=ladder[4].id),
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateError)

        final = await challenge_ops.get_challenge(live.id)
        assert final.status == ChallengeStatus.COMPLETED
        assert final.winner_id == successes[0].winner_id
        assert (await profile_ops.verify_rank_integrity()).is_contiguous

    @pytest.mark.asyncio
    async def test_matches_sharing_a_player_settle_cleanly(self, challenge_ops, profile_ops, ladder):
        # #8 plays #5 while #10 plays #8
        first = await start_live_match(challenge_ops, ladder[7], ladder[4])
        second = await start_live_match(challenge_ops, ladder[9], ladder[7])

        results = await asyncio.gather(
            challenge_ops.finalize(first.id, 7, 3),
            challenge_ops.finalize(second.id, 7, 2),
            return_exceptions=True
        )

        assert not [r for r in results if isinstance(r, Exception)]
        report = await profile_ops.verify_rank_integrity()
        assert report.is_contiguous
        assert sorted((await ranks(profile_ops)).values()) == list(range(1, 11))
        for challenge_id in (first.id, second.id):
            assert (await challenge_ops.get_challenge(challenge_id)).status == ChallengeStatus.COMPLETED


class TestSettlementFailure:
    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self, db, profile_ops, ladder, clock):
        ops = ChallengeOperations(db, settlement=SettleThenFail(db), clock=clock)
        challenger, target = ladder[7], ladder[4]
        live = await start_live_match(ops, challenger, target)
        before = await ranks(profile_ops)

        with pytest.raises(SettlementFailedError) as exc_info:
            await ops.finalize(live.id, 7, 1)
        assert exc_info.value.kind == ErrorKind.SETTLEMENT_FAILED

        challenge = await ops.get_challenge(live.id)
        assert challenge.status == ChallengeStatus.LIVE
        assert challenge.winner_id is None
        assert challenge.challenger_score is None
        assert await ranks(profile_ops) == before
        assert (await profile_ops.get_profile(target.id)).cooldown_until is None

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, db, profile_ops, ladder, clock):
        failing = ChallengeOperations(db, settlement=SettleThenFail(db), clock=clock)
        working = ChallengeOperations(db, clock=clock)
        live = await start_live_match(working, ladder[7], ladder[4])

        with pytest.raises(SettlementFailedError):
            await failing.finalize(live.id, 7, 1)

        result = await working.finalize(live.id, 7, 1)
        assert result.settlement.swapped
        assert (await ranks(profile_ops))[ladder[7].id] == 5


class TestRankSettlement:
    @pytest.mark.asyncio
    async def test_missing_profile_fails(self, db, ladder):
        with pytest.raises(SettlementFailedError):
            await RankSettlement(db).settle_match(ladder[0].id, 9999)

    @pytest.mark.asyncio
    async def test_same_profile_fails(self, db, ladder):
        with pytest.raises(SettlementFailedError):
            await RankSettlement(db).settle_match(ladder[0].id, ladder[0].id)

    @pytest.mark.asyncio
    async def test_standalone_swap(self, db, profile_ops, ladder):
        result = await RankSettlement(db).settle_match(ladder[6].id, ladder[1].id)

        assert result.winner_old_rank == 7
        assert result.winner_new_rank == 2
        assert result.loser_new_rank == 7
        after = await ranks(profile_ops)
        assert after[ladder[6].id] == 2
        assert after[ladder[1].id] == 7
        assert (await profile_ops.get_profile(ladder[6].id)).points == Config.POINTS_WIN
