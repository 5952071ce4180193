"""
Centralized error embeds for consistent error handling across the ladder bot.
"""

import discord

from ladder.utils.exceptions import ErrorKind, IneligibleError, IneligibleReason, LadderError
from ladder.utils.time_utils import format_duration


class ErrorEmbeds:
    """Centralized error embed factory for consistent error handling."""

    _TITLES = {
        ErrorKind.INELIGIBLE: "Can't Challenge",
        ErrorKind.NOT_FOUND: "Not Found",
        ErrorKind.FORBIDDEN: "Not Allowed",
        ErrorKind.INVALID_STATE: "Not Available",
        ErrorKind.MATCH_NOT_COMPLETE: "Match Not Complete",
        ErrorKind.SETTLEMENT_FAILED: "Result Not Recorded",
        ErrorKind.INVALID_INPUT: "Invalid Input",
    }

    @staticmethod
    def ladder_error(error: LadderError) -> discord.Embed:
        """Render any ladder error with its player-facing message."""
        if isinstance(error, IneligibleError):
            return ErrorEmbeds.ineligible(error)

        color = discord.Color.red() if error.kind == ErrorKind.SETTLEMENT_FAILED else discord.Color.orange()
        return discord.Embed(
            title=ErrorEmbeds._TITLES.get(error.kind, "Error"),
            description=error.user_message,
            color=color
        )

    @staticmethod
    def ineligible(error: IneligibleError) -> discord.Embed:
        """Create embed for a challenge blocked by cooldown or rank range."""
        embed = discord.Embed(
            title="Can't Challenge",
            description=error.user_message,
            color=discord.Color.orange()
        )
        if error.reason == IneligibleReason.IN_COOLDOWN and error.cooldown_remaining:
            embed.add_field(name="Cooldown Remaining", value=format_duration(error.cooldown_remaining))
        elif error.reason == IneligibleReason.OUT_OF_RANGE and error.rank_gap is not None:
            embed.add_field(name="Rank Gap", value=str(error.rank_gap))
            embed.add_field(name="Allowed", value=f"±{error.challenge_range}")
        return embed

    @staticmethod
    def not_registered() -> discord.Embed:
        """Create embed for when a member is not on the ladder."""
        return discord.Embed(
            title="Not on the Ladder",
            description="You're not on the ladder yet!\n\nUse `/join` to sign up or claim your spot.",
            color=discord.Color.red()
        )

    @staticmethod
    def command_error(error: str) -> discord.Embed:
        """Create embed for general command errors."""
        return discord.Embed(
            title="Command Error",
            description=f"❌ {error}",
            color=discord.Color.red()
        )

    @staticmethod
    def admin_only() -> discord.Embed:
        embed = discord.Embed(
            title="❌ Administrative Privileges Required",
            description="This command is restricted to bot administrators only.",
            color=discord.Color.red()
        )
        embed.set_footer(text="Contact the bot owner if you believe you should have access.")
        return embed

    @staticmethod
    def unexpected_error() -> discord.Embed:
        return discord.Embed(
            title="❌ An error occurred",
            description="An unexpected error occurred while processing your command. The developers have been notified.",
            color=discord.Color.red()
        )
