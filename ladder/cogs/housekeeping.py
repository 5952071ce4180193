"""
Housekeeping Cog - Background Tasks & Admin Commands

Sweeps pending challenges past their deadline into expired, and gives the
owner manual sweep and rank integrity commands.
"""

import discord
from discord import app_commands
from discord.ext import commands, tasks
from datetime import datetime, timezone

from ladder.config import Config
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


class HousekeepingCog(commands.Cog):
    """Background maintenance and cleanup tasks"""

    def __init__(self, bot):
        self.bot = bot
        self.logger = logger

    async def cog_load(self):
        self.expire_challenges.change_interval(minutes=Config.EXPIRY_SWEEP_MINUTES)
        self.expire_challenges.start()
        self.logger.info("HousekeepingCog: Background tasks started")

    async def cog_unload(self):
        """Stop background tasks when cog is unloaded"""
        self.expire_challenges.cancel()
        self.logger.info("HousekeepingCog: Background tasks stopped")

    @tasks.loop(hours=1)
    async def expire_challenges(self):
        """Background task that expires overdue pending challenges"""
        try:
            expired = await self.bot.challenge_ops.expire_overdue_challenges()
            if expired:
                self.logger.info(f"Expired {len(expired)} overdue challenges: {expired}")
        except Exception as e:
            self.logger.error(f"Error in challenge expiry task: {e}", exc_info=True)

    @expire_challenges.before_loop
    async def before_expire_challenges(self):
        """Wait for bot to be ready before starting the sweep"""
        await self.bot.wait_until_ready()

    @app_commands.command(
        name="admin-expire-challenges",
        description="Expire overdue challenges now (Owner only)"
    )
    async def admin_expire_challenges(self, interaction: discord.Interaction):
        if interaction.user.id != Config.OWNER_DISCORD_ID:
            await interaction.response.send_message(
                "❌ **Access Denied**\nThis command is restricted to the bot owner.",
                ephemeral=True
            )
            return

        await interaction.response.defer(ephemeral=True)
        expired = await self.bot.challenge_ops.expire_overdue_challenges()

        embed = discord.Embed(
            title="✅ Sweep Complete",
            description=f"Expired **{len(expired)}** overdue challenges.",
            color=discord.Color.green(),
            timestamp=datetime.now(timezone.utc)
        )
        if not expired:
            embed.description = "No overdue challenges found."
            embed.color = discord.Color.blue()

        await interaction.followup.send(embed=embed)
        self.logger.info(
            f"Admin expiry sweep by {interaction.user.id} ({interaction.user.name}): {len(expired)} expired"
        )

    @app_commands.command(
        name="admin-verify-ranks",
        description="Check the ladder for duplicate or missing ranks (Owner only)"
    )
    async def admin_verify_ranks(self, interaction: discord.Interaction):
        if interaction.user.id != Config.OWNER_DISCORD_ID:
            await interaction.response.send_message(
                "❌ **Access Denied**\nThis command is restricted to the bot owner.",
                ephemeral=True
            )
            return

        report = await self.bot.profile_ops.verify_rank_integrity()
        embed = discord.Embed(
            title="Rank Integrity",
            color=discord.Color.green() if report.is_contiguous else discord.Color.orange()
        )
        embed.add_field(name="Profiles", value=str(report.total_profiles))
        embed.add_field(name="Duplicates", value=str(report.duplicate_ranks or "none"))
        embed.add_field(name="Missing", value=str(report.missing_ranks or "none"))
        if report.invalid_ranks:
            embed.add_field(name="Invalid", value=str(report.invalid_ranks))
        await interaction.response.send_message(embed=embed, ephemeral=True)


async def setup(bot):
    await bot.add_cog(HousekeepingCog(bot))
