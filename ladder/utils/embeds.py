"""
Shared embed utilities for the ladder bot.

Provides reusable embed builders so cogs and views render profiles,
challenges and the ladder the same way.
"""

import discord
from typing import Dict, List, Optional, Tuple

from ladder.constants import UIConstants
from ladder.database.models import Challenge, ChallengeStatus, Profile
from ladder.operations.eligibility import EligibilityResult
from ladder.services.live_score import ScoreState
from ladder.utils.time_utils import format_duration, utcnow

STATUS_LABELS = {
    ChallengeStatus.PENDING: "⏳ Pending",
    ChallengeStatus.NEGOTIATING: "🤝 Agreed, setting details",
    ChallengeStatus.SCHEDULED: "📅 Scheduled",
    ChallengeStatus.LIVE: f"{UIConstants.LIVE_EMOJI} Live",
    ChallengeStatus.COMPLETED: "✅ Completed",
    ChallengeStatus.FORFEITED: "🏳️ Declined",
    ChallengeStatus.EXPIRED: "⌛ Expired",
}


def _timestamp(value) -> str:
    return discord.utils.format_dt(value, style='f') if value else "TBD"


def build_profile_embed(profile: Profile, member: Optional[discord.abc.User] = None,
                        total_players: Optional[int] = None) -> discord.Embed:
    """Profile card: rank, points, Fargo rating and cooldown."""
    color = UIConstants.GOLD_RANK_COLOR if profile.ladder_rank == 1 else UIConstants.DEFAULT_EMBED_COLOR
    embed = discord.Embed(title=f"{UIConstants.TROPHY_EMOJI} {profile.display_name}", color=color)

    if member:
        embed.set_thumbnail(url=member.display_avatar.url)
    elif profile.avatar_url:
        embed.set_thumbnail(url=profile.avatar_url)

    rank = f"#{profile.ladder_rank}" + (f" / {total_players}" if total_players else "")
    embed.add_field(name="Ladder Rank", value=rank, inline=True)
    embed.add_field(name="Points", value=f"{profile.points:,}", inline=True)
    embed.add_field(name="Fargo", value=str(profile.fargo_rating or "—"), inline=True)

    now = utcnow()
    if profile.in_cooldown(now):
        embed.add_field(
            name=f"{UIConstants.COOLDOWN_EMOJI} Cooldown",
            value=f"Can challenge again in {format_duration(profile.cooldown_until - now)}",
            inline=False
        )

    if not profile.is_claimed:
        embed.set_footer(text="Unclaimed profile. Use /claim if this is you.")
    return embed


def build_ladder_embed(entries: List[Profile], page: int, total_pages: int,
                       eligibility: Optional[Dict[int, EligibilityResult]] = None,
                       viewer_id: Optional[int] = None) -> discord.Embed:
    """
    One page of the ladder.

    When ``eligibility`` is given, each row the viewer may challenge is marked
    with ⚔️.
    """
    lines = []
    for profile in entries:
        marker = ""
        if profile.id == viewer_id:
            marker = " ⬅️ you"
        elif eligibility and eligibility.get(profile.id):
            marker = " ⚔️"
        crown = "👑 " if profile.ladder_rank == 1 else ""
        ghost = " *(unclaimed)*" if not profile.is_claimed else ""
        lines.append(f"`#{profile.ladder_rank:>3}` {crown}**{profile.display_name}**{ghost} · {profile.points} pts{marker}")

    embed = discord.Embed(
        title=f"{UIConstants.TROPHY_EMOJI} Capital Ladder",
        description="\n".join(lines) or "The ladder is empty. Use `/join` to be the first!",
        color=UIConstants.DEFAULT_EMBED_COLOR
    )
    embed.set_footer(text=f"Page {page}/{max(total_pages, 1)} · ⚔️ = you can challenge")
    return embed


def build_challenge_embed(challenge: Challenge) -> discord.Embed:
    """Challenge summary with terms, status and (when finished) the result."""
    color = UIConstants.LIVE_COLOR if challenge.status == ChallengeStatus.LIVE else UIConstants.DEFAULT_EMBED_COLOR
    embed = discord.Embed(
        title=f"Challenge #{challenge.id}: {challenge.challenger.display_name} vs {challenge.challenged.display_name}",
        color=color
    )
    embed.add_field(name="Status", value=STATUS_LABELS.get(challenge.status, challenge.status.value), inline=True)
    embed.add_field(name="Game", value=f"{challenge.game_type.value}, race to {challenge.games_to_win}", inline=True)
    embed.add_field(name="Venue", value=challenge.venue or "TBD", inline=True)
    embed.add_field(name="When", value=_timestamp(challenge.proposed_time), inline=True)

    if challenge.status == ChallengeStatus.PENDING:
        embed.add_field(name="Respond By", value=_timestamp(challenge.deadline), inline=True)

    if challenge.stream_url:
        embed.add_field(name="Stream", value=challenge.stream_url, inline=False)

    if challenge.status == ChallengeStatus.COMPLETED:
        winner = challenge.challenger if challenge.winner_id == challenge.challenger_id else challenge.challenged
        embed.add_field(
            name="Result",
            value=f"{UIConstants.TROPHY_EMOJI} **{winner.display_name}** won {challenge.final_score}",
            inline=False
        )
    return embed


def build_scoreboard_embed(challenge: Challenge, state: ScoreState) -> discord.Embed:
    """Live scoreboard card, refreshed on every score update."""
    embed = discord.Embed(
        title=f"{UIConstants.LIVE_EMOJI} LIVE · {challenge.game_type.value}, race to {challenge.games_to_win}",
        color=UIConstants.LIVE_COLOR
    )
    embed.add_field(name=challenge.challenger.display_name, value=f"**{state.score1}**", inline=True)
    embed.add_field(name="vs", value="—", inline=True)
    embed.add_field(name=challenge.challenged.display_name, value=f"**{state.score2}**", inline=True)
    if challenge.stream_url:
        embed.add_field(name="Watch", value=challenge.stream_url, inline=False)
    embed.set_footer(text=f"Challenge #{challenge.id} · scores are final only once the match is finalized")
    return embed


def build_challenge_list_embed(title: str, rows: List[Tuple[Challenge, str]]) -> discord.Embed:
    """Compact list of challenges, each row with a caller-supplied label."""
    embed = discord.Embed(title=title, color=UIConstants.DEFAULT_EMBED_COLOR)
    if not rows:
        embed.description = "Nothing here."
        return embed

    embed.description = "\n".join(
        f"`#{challenge.id}` {label} · {challenge.game_type.value} race to {challenge.games_to_win} · "
        f"{STATUS_LABELS.get(challenge.status, challenge.status.value)}"
        for challenge, label in rows
    )
    return embed
