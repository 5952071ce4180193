"""
Confirmation View

Two-button prompt for actions that can't be undone, such as wiping a live
scoreboard back to 0-0.
"""

import asyncio

import discord


class ConfirmationView(discord.ui.View):
    """Ephemeral Confirm/Cancel prompt restricted to one user"""

    def __init__(self, user_id: int, timeout: float = 60):
        super().__init__(timeout=timeout)
        self.user_id = user_id
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.user_id:
            await interaction.response.send_message("❌ This prompt isn't for you.", ephemeral=True)
            return False
        return True

    @discord.ui.button(label="Confirm", style=discord.ButtonStyle.danger)
    async def confirm(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.edit_message(content="✅ Confirmed.", view=None)
        self._resolve(True)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary)
    async def cancel(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.edit_message(content="Cancelled.", view=None)
        self._resolve(False)

    async def on_timeout(self):
        self._resolve(False)

    async def wait_for_choice(self) -> bool:
        """Resolve to True only if the user pressed Confirm before the timeout"""
        return await self._result

    def _resolve(self, value: bool):
        if not self._result.done():
            self._result.set_result(value)
        self.stop()
