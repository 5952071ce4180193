"""
Rank settlement after a completed match.

The swap runs inside the caller's transaction when one is provided, so a
failure here rolls back the challenge completion along with it.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ladder.config import Config
from ladder.database.database import Database
from ladder.utils.exceptions import SettlementFailedError
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class SettlementResult:
    """Outcome of a settled match"""
    winner_id: int
    loser_id: int
    winner_old_rank: int
    loser_old_rank: int
    winner_new_rank: int
    loser_new_rank: int
    points_awarded: int

    @property
    def swapped(self) -> bool:
        return self.winner_new_rank != self.winner_old_rank


class RankSettlement:
    """Applies the ladder's rank swap rule and win points."""

    def __init__(self, db: Database):
        self.db = db
        self.logger = setup_logger(f"{__name__}.RankSettlement")

    async def settle_match(self, winner_id: int, loser_id: int,
                           session: Optional[AsyncSession] = None) -> SettlementResult:
        """
        Settle a match between two players.

        If the winner holds the worse (numerically higher) rank the two ranks
        are exchanged; every other rank is untouched. The winner is awarded
        the win points either way.

        Raises:
            SettlementFailedError: If either profile is missing or the swap
                could not be written
        """
        async def _settle(session: AsyncSession) -> SettlementResult:
            if winner_id == loser_id:
                raise SettlementFailedError(winner_id, loser_id, "winner and loser are the same profile")

            profiles = await self.db.get_profiles_for_update([winner_id, loser_id], session)
            by_id = {profile.id: profile for profile in profiles}
            winner = by_id.get(winner_id)
            loser = by_id.get(loser_id)
            if winner is None or loser is None:
                raise SettlementFailedError(winner_id, loser_id, "profile not found")

            winner_old_rank = winner.ladder_rank
            loser_old_rank = loser.ladder_rank

            try:
                if winner_old_rank > loser_old_rank:
                    # Park the winner on a placeholder so the unique rank index
                    # never sees two rows holding the same rank mid-swap.
                    winner.ladder_rank = -winner.id
                    await session.flush()
                    loser.ladder_rank = winner_old_rank
                    await session.flush()
                    winner.ladder_rank = loser_old_rank

                winner.points = (winner.points or 0) + Config.POINTS_WIN
                await session.flush()
            except SQLAlchemyError as e:
                self.logger.error(f"Rank swap failed for {winner_id} over {loser_id}: {e}")
                raise SettlementFailedError(winner_id, loser_id, str(e)) from e

            result = SettlementResult(
                winner_id=winner_id,
                loser_id=loser_id,
                winner_old_rank=winner_old_rank,
                loser_old_rank=loser_old_rank,
                winner_new_rank=winner.ladder_rank,
                loser_new_rank=loser.ladder_rank,
                points_awarded=Config.POINTS_WIN
            )

            if result.swapped:
                self.logger.info(
                    f"Rank swap: profile {winner_id} #{winner_old_rank} -> #{result.winner_new_rank}, "
                    f"profile {loser_id} #{loser_old_rank} -> #{result.loser_new_rank}"
                )
            else:
                self.logger.info(f"No rank change: profile {winner_id} already above profile {loser_id}")

            return result

        if session:
            return await _settle(session)
        else:
            async with self.db.transaction() as txn_session:
                return await _settle(txn_session)
