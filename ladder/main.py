import asyncio
import logging
import traceback
from typing import Optional

import discord
from discord.ext import commands
from discord import app_commands

from ladder.config import Config
from ladder.database.database import Database
from ladder.operations.challenge_operations import ChallengeOperations
from ladder.operations.profile_operations import ProfileOperations
from ladder.services.live_score import LiveScoreHub
from ladder.services.notifier import LadderNotifier
from ladder.services.push import ExpoPushClient
from ladder.services.realtime import RealtimeBroker, create_broker
from ladder.utils.error_embeds import ErrorEmbeds
from ladder.utils.exceptions import LadderError
from ladder.utils.logger import setup_logger

class LadderBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.members = True

        super().__init__(
            command_prefix=Config.COMMAND_PREFIX,
            intents=intents,
            help_command=None
        )

        # Attach app command error handler
        self.tree.on_error = self.on_app_command_error

        self.db: Optional[Database] = None
        self.broker: Optional[RealtimeBroker] = None
        self.push_client: Optional[ExpoPushClient] = None
        self.notifier: Optional[LadderNotifier] = None
        self.score_hub: Optional[LiveScoreHub] = None
        self.challenge_ops: Optional[ChallengeOperations] = None
        self.profile_ops: Optional[ProfileOperations] = None
        self.logger = setup_logger(__name__)

    async def setup_hook(self):
        """Called when the bot is starting up"""
        self.logger.info("Setting up Capital Ladder...")

        # Initialize database
        self.db = Database()
        await self.db.initialize()

        # Realtime, push and operations
        self.broker = await create_broker()
        self.push_client = ExpoPushClient()
        self.notifier = LadderNotifier(self.db, push_client=self.push_client, broker=self.broker)
        self.score_hub = LiveScoreHub(self.broker)
        self.profile_ops = ProfileOperations(self.db, notifier=self.notifier)
        self.challenge_ops = ChallengeOperations(
            self.db, notifier=self.notifier, score_hub=self.score_hub
        )

        report = await self.profile_ops.verify_rank_integrity()
        if not report.is_valid:
            self.logger.error("Ladder ranks are inconsistent; run an integrity repair before accepting results")
        elif report.missing_ranks:
            self.logger.warning(f"Ladder has rank gaps at {report.missing_ranks}")

        # Load cogs
        await self.load_cogs()

        # Sync slash commands
        await self._sync_commands()

        self.logger.info("Capital Ladder setup complete!")

    async def load_cogs(self):
        """Load all cogs"""
        cogs_to_load = [
            'ladder.cogs.ladder',
            'ladder.cogs.housekeeping',
        ]

        for cog in cogs_to_load:
            try:
                await self.load_extension(cog)
                self.logger.info(f"Loaded cog: {cog}")
            except Exception as e:
                self.logger.error(f"Failed to load cog {cog}: {e}", exc_info=True)

    async def _sync_commands(self):
        """Sync slash commands with Discord"""
        if not self.tree.get_commands():
            self.logger.warning("No application commands found to sync. Check for cog loading errors.")
            return

        try:
            guild_ids = Config.get_guild_ids()

            if guild_ids:
                # Guild-specific sync (instant updates, works in specified servers)
                self.logger.info(f"Attempting to sync commands to {len(guild_ids)} guild(s): {guild_ids}...")

                total_synced = 0
                for guild_id in guild_ids:
                    try:
                        guild = discord.Object(id=guild_id)
                        self.tree.copy_global_to(guild=guild)
                        synced = await self.tree.sync(guild=guild)
                        self.logger.info(f"Successfully synced {len(synced)} command(s) to guild {guild_id}")
                        total_synced += len(synced)
                    except discord.errors.Forbidden:
                        self.logger.error(f"Permission error syncing to guild {guild_id}. Ensure the bot has the 'application.commands' scope and is in the guild.", exc_info=True)
                    except discord.errors.HTTPException as e:
                        self.logger.error(f"HTTP error syncing to guild {guild_id}. Status: {e.status}, Response: {e.text}", exc_info=True)

                self.logger.info(f"Multi-guild sync complete: {total_synced} total command instances deployed")
            else:
                # Global sync (can take up to 1 hour, works everywhere)
                self.logger.info("Attempting to sync commands globally... (Note: This can take up to an hour to propagate)")
                synced = await self.tree.sync()
                self.logger.info(f"Successfully synced {len(synced)} command(s) globally")
        except Exception as e:
            self.logger.error(f"Failed to sync commands: {e}", exc_info=True)
            # Don't raise - the bot still serves the commands it already has

    async def on_ready(self):
        """Called when the bot is ready"""
        self.logger.info(f'{self.user} has connected to Discord!')
        self.logger.info(f'Bot is in {len(self.guilds)} guilds')

        await self.change_presence(
            activity=discord.Game(name="Capital Ladder | /ladder")
        )

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for slash commands"""
        command_name = interaction.command.name if interaction.command else 'Unknown'
        original = getattr(error, 'original', error)

        if isinstance(original, LadderError):
            # Expected rule violations: show the player why, no traceback
            self.logger.info(f"'{command_name}' by {interaction.user} rejected: {original.kind.value} {original}")
            error_embed = ErrorEmbeds.ladder_error(original)
        elif isinstance(error, app_commands.CheckFailure):
            self.logger.info(f"Permission denied for command '{command_name}' by user {interaction.user}")
            if command_name.startswith('admin-'):
                error_embed = ErrorEmbeds.admin_only()
            else:
                error_embed = ErrorEmbeds.command_error("You don't have the required permissions to use this command.")
        elif isinstance(error, app_commands.CommandOnCooldown):
            error_embed = ErrorEmbeds.command_error(f"Command is on cooldown. Try again in {error.retry_after:.2f} seconds.")
        else:
            self.logger.error(f"Error in app command '{command_name}': {error}", exc_info=True)
            error_embed = ErrorEmbeds.unexpected_error()

        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=error_embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=error_embed, ephemeral=True)
        except discord.HTTPException as e:
            self.logger.error(f"Failed to send error response: {e}")

    async def on_command_error(self, ctx: commands.Context, error: Exception):
        """Global error handler for prefix commands"""
        if isinstance(error, commands.CommandNotFound):
            return

        original = getattr(error, 'original', error)
        if isinstance(original, LadderError):
            await ctx.send(embed=ErrorEmbeds.ladder_error(original))
            return

        if isinstance(error, commands.CheckFailure):
            self.logger.info(f"Permission denied for command '{ctx.command.name if ctx.command else 'Unknown'}' by user {ctx.author}")
            await ctx.send(embed=ErrorEmbeds.admin_only())
            return

        if isinstance(error, commands.MissingRequiredArgument):
            await ctx.send(f"❌ Missing required argument: `{error.param.name}`")
            return

        self.logger.error(f"Unexpected error in command {ctx.command}: {error}")
        self.logger.error(''.join(traceback.format_exception(type(error), error, error.__traceback__)))
        await ctx.send(embed=ErrorEmbeds.unexpected_error())

    async def close(self):
        """Cleanup when bot is shutting down"""
        self.logger.info("Shutting down Capital Ladder...")

        if self.score_hub:
            await self.score_hub.close_all()
        if self.notifier:
            await self.notifier.drain()
        if self.push_client:
            await self.push_client.close()
        if self.broker:
            await self.broker.close()
        if self.db:
            await self.db.close()

        await super().close()

async def main():
    """Main entry point"""
    Config.validate()

    bot = LadderBot()

    try:
        await bot.start(Config.DISCORD_TOKEN)
    except KeyboardInterrupt:
        await bot.close()
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
    finally:
        await bot.close()

def run():
    """Console script entry point"""
    asyncio.run(main())

if __name__ == "__main__":
    run()
