"""
Scoreboard View

Button panel for a live match. Every press goes through the LiveScoreSession,
so all open scoreboards for the same challenge (in this process or, with Redis,
any other) follow along.
"""

from typing import Optional

import discord

from ladder.database.models import Challenge
from ladder.operations.challenge_operations import ChallengeOperations
from ladder.services.live_score import LiveScoreSession, ScoreState
from ladder.ui.confirmation_view import ConfirmationView
from ladder.utils.embeds import build_challenge_embed, build_scoreboard_embed
from ladder.utils.error_embeds import ErrorEmbeds
from ladder.utils.exceptions import LadderError
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


class ScoreboardView(discord.ui.View):
    """
    Live scoreboard controls for one challenge.

    Only the two players may press buttons. Finalize submits whatever the
    board currently shows.
    """

    TIMEOUT_SECONDS = 6 * 60 * 60

    def __init__(self, challenge: Challenge, session: LiveScoreSession, challenge_ops: ChallengeOperations):
        super().__init__(timeout=self.TIMEOUT_SECONDS)
        self.challenge = challenge
        self.session = session
        self.challenge_ops = challenge_ops
        self.message: Optional[discord.Message] = None

        # Discord account -> profile id for the two players
        self.players = {
            challenge.challenger.owner_id: challenge.challenger_id,
            challenge.challenged.owner_id: challenge.challenged_id,
        }
        self.players.pop(None, None)

        self.p1_plus.label = f"+1 {challenge.challenger.display_name}"[:80]
        self.p2_plus.label = f"+1 {challenge.challenged.display_name}"[:80]

        self.session.add_listener(self._refresh)

    def current_embed(self) -> discord.Embed:
        return build_scoreboard_embed(self.challenge, self.session.state)

    async def _refresh(self, state: ScoreState):
        if self.message is None:
            return
        try:
            await self.message.edit(embed=build_scoreboard_embed(self.challenge, state), view=self)
        except discord.HTTPException as e:
            logger.warning(f"Could not refresh scoreboard for challenge {self.challenge.id}: {e}")

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if str(interaction.user.id) not in self.players:
            await interaction.response.send_message("❌ Only the two players can keep score.", ephemeral=True)
            return False
        return True

    @discord.ui.button(label="+1 P1", style=discord.ButtonStyle.primary, row=0)
    async def p1_plus(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        await self.session.adjust(1, 1)

    @discord.ui.button(label="−1", style=discord.ButtonStyle.secondary, row=0)
    async def p1_minus(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        await self.session.adjust(1, -1)

    @discord.ui.button(label="+1 P2", style=discord.ButtonStyle.primary, row=1)
    async def p2_plus(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        await self.session.adjust(2, 1)

    @discord.ui.button(label="−1", style=discord.ButtonStyle.secondary, row=1)
    async def p2_minus(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        await self.session.adjust(2, -1)

    @discord.ui.button(label="Reset", style=discord.ButtonStyle.danger, row=2)
    async def reset(self, interaction: discord.Interaction, button: discord.ui.Button):
        prompt = ConfirmationView(interaction.user.id)
        await interaction.response.send_message(
            "Reset both scores to 0-0?", view=prompt, ephemeral=True
        )
        await self.session.reset(prompt.wait_for_choice)

    @discord.ui.button(label="Finalize", style=discord.ButtonStyle.success, row=2)
    async def finalize(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        state = self.session.state
        actor_id = self.players[str(interaction.user.id)]

        try:
            result = await self.challenge_ops.finalize(
                self.challenge.id, state.score1, state.score2, actor_id=actor_id
            )
        except LadderError as e:
            await interaction.followup.send(embed=ErrorEmbeds.ladder_error(e), ephemeral=True)
            return

        self.challenge = result.challenge
        self.stop()
        await interaction.edit_original_response(embed=build_challenge_embed(result.challenge), view=None)

    async def on_timeout(self):
        self.session.remove_listener(self._refresh)
        score_hub = self.challenge_ops.score_hub
        if score_hub is not None:
            await score_hub.release(self.challenge.id)
        if self.message is not None:
            try:
                await self.message.edit(view=None)
            except discord.HTTPException:
                pass
