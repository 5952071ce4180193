"""
Ladder Cog - player-facing slash commands

Joining the ladder, challenging, responding, going live, keeping score and
reporting results. Rule violations raise LadderError subclasses, which the
bot's tree error handler renders through ErrorEmbeds.
"""

import math
from datetime import datetime
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from ladder.config import Config
from ladder.constants import UIConstants
from ladder.database.models import ChallengeStatus, GameType, OPEN_STATUSES, Profile
from ladder.operations.challenge_operations import ChallengeDecision
from ladder.ui.scoreboard_view import ScoreboardView
from ladder.utils.embeds import (
    build_challenge_embed, build_challenge_list_embed, build_ladder_embed, build_profile_embed
)
from ladder.utils.exceptions import ValidationError
from ladder.utils.logger import setup_logger
from ladder.utils.time_utils import parse_when

logger = setup_logger(__name__)

GAME_CHOICES = [app_commands.Choice(name=g.value, value=g.value) for g in GameType]
DECISION_CHOICES = [
    app_commands.Choice(name="Accept", value=ChallengeDecision.ACCEPT.value),
    app_commands.Choice(name="Decline", value=ChallengeDecision.DECLINE.value),
]
LIST_CHOICES = [
    app_commands.Choice(name="Inbox (challenges to me)", value="challenged"),
    app_commands.Choice(name="Outbox (challenges I sent)", value="challenger"),
    app_commands.Choice(name="All open", value="any"),
]


def _parse_when(when: Optional[str]) -> Optional[datetime]:
    if not when:
        return None
    try:
        return parse_when(when)
    except ValueError as e:
        raise ValidationError(str(e))


class LadderCog(commands.Cog):
    """Ladder challenges and standings"""

    def __init__(self, bot):
        self.bot = bot
        self.logger = logger

    @property
    def challenge_ops(self):
        return self.bot.challenge_ops

    @property
    def profile_ops(self):
        return self.bot.profile_ops

    async def _me(self, interaction: discord.Interaction) -> Profile:
        return await self.profile_ops.require_profile_for_owner(str(interaction.user.id))

    async def _member_profile(self, member: discord.abc.User) -> Profile:
        return await self.profile_ops.require_profile_for_owner(str(member.id))

    # Profiles

    @app_commands.command(name="join", description="Join the ladder (or take over your pre-seeded spot)")
    @app_commands.describe(name="Name to show on the ladder (defaults to your server name)")
    async def join(self, interaction: discord.Interaction, name: Optional[str] = None):
        await interaction.response.defer()
        result = await self.profile_ops.claim_or_create_profile(
            str(interaction.user.id),
            name or interaction.user.display_name,
            avatar_url=interaction.user.display_avatar.url
        )

        if not result.created:
            message = "You're already on the ladder."
        elif result.merged:
            message = f"Welcome! You've taken over your spot at **#{result.profile.ladder_rank}**."
        else:
            message = f"Welcome to the ladder! You start at **#{result.profile.ladder_rank}**."

        await interaction.followup.send(content=message, embed=build_profile_embed(result.profile, interaction.user))

    @app_commands.command(name="claim", description="Claim an unclaimed ladder profile by name")
    @app_commands.describe(name="Exact name shown on the ladder")
    async def claim(self, interaction: discord.Interaction, name: str):
        await interaction.response.defer(ephemeral=True)
        ghost = await self.bot.db.find_unclaimed_profile_by_name(name)
        if not ghost:
            raise ValidationError(f"No unclaimed profile named '{name}'.")

        profile = await self.profile_ops.claim_profile(ghost.id, str(interaction.user.id))
        await interaction.followup.send(
            content=f"✅ You now own **{profile.display_name}** at #{profile.ladder_rank}.",
            embed=build_profile_embed(profile, interaction.user),
            ephemeral=True
        )

    @app_commands.command(name="profile", description="Show a ladder profile")
    async def profile(self, interaction: discord.Interaction, member: Optional[discord.Member] = None):
        target = member or interaction.user
        profile = await self._member_profile(target)
        ladder = await self.profile_ops.get_ladder()
        await interaction.response.send_message(
            embed=build_profile_embed(profile, target, total_players=len(ladder))
        )

    @app_commands.command(name="push-token", description="Link your phone for push notifications")
    @app_commands.describe(token="Expo push token from the mobile app (leave empty to unlink)")
    async def push_token(self, interaction: discord.Interaction, token: Optional[str] = None):
        me = await self._me(interaction)
        await self.profile_ops.register_push_token(me.id, token)
        await interaction.response.send_message(
            "✅ Push notifications linked." if token else "✅ Push notifications unlinked.", ephemeral=True
        )

    # Standings

    @app_commands.command(name="ladder", description="Show the ladder")
    @app_commands.describe(page="Page number")
    async def ladder(self, interaction: discord.Interaction, page: Optional[int] = 1):
        ladder = await self.profile_ops.get_ladder()
        total_pages = max(1, math.ceil(len(ladder) / UIConstants.LADDER_PAGE_SIZE))
        page = min(max(page or 1, 1), total_pages)
        start = (page - 1) * UIConstants.LADDER_PAGE_SIZE
        entries = ladder[start:start + UIConstants.LADDER_PAGE_SIZE]

        me = await self.profile_ops.get_profile_by_owner(str(interaction.user.id))
        eligibility = None
        if me:
            targets = await self.profile_ops.get_challengeable_targets(me.id)
            eligibility = {profile.id: result for profile, result in targets}

        await interaction.response.send_message(
            embed=build_ladder_embed(entries, page, total_pages, eligibility, viewer_id=me.id if me else None)
        )

    @app_commands.command(name="points", description="Show the points leaderboard")
    async def points(self, interaction: discord.Interaction):
        leaders = await self.profile_ops.get_points_leaderboard(limit=UIConstants.LADDER_PAGE_SIZE)
        lines = [
            f"`{i:>2}.` **{p.display_name}** · {p.points} pts" + (f" · Fargo {p.fargo_rating}" if p.fargo_rating else "")
            for i, p in enumerate(leaders, start=1)
        ]
        embed = discord.Embed(
            title="⭐ Points Leaders",
            description="\n".join(lines) or "No points yet.",
            color=UIConstants.DEFAULT_EMBED_COLOR
        )
        await interaction.response.send_message(embed=embed)

    # Challenges

    @app_commands.command(name="challenge", description="Challenge another player")
    @app_commands.describe(
        opponent="Player to challenge",
        game="Game type",
        race_to=f"Games needed to win ({Config.MIN_GAMES_TO_WIN}-{Config.MAX_GAMES_TO_WIN})",
        venue="Where to play",
        when="When to play: +3h, +2d or YYYY-MM-DD HH:MM (UTC)"
    )
    @app_commands.choices(game=GAME_CHOICES)
    async def challenge(self, interaction: discord.Interaction, opponent: discord.Member,
                        game: Optional[app_commands.Choice[str]] = None,
                        race_to: Optional[app_commands.Range[int, 1, 25]] = None,
                        venue: Optional[str] = None, when: Optional[str] = None):
        await interaction.response.defer()
        me = await self._me(interaction)
        target = await self._member_profile(opponent)

        challenge = await self.challenge_ops.create_challenge(
            me.id, target.id,
            game_type=game.value if game else GameType.EIGHT_BALL,
            games_to_win=race_to,
            proposed_time=_parse_when(when),
            venue=venue
        )

        await interaction.followup.send(
            content=f"{opponent.mention}, you've been challenged! Use `/respond {challenge.id}` to answer.",
            embed=build_challenge_embed(challenge)
        )

    @app_commands.command(name="respond", description="Accept or decline a challenge")
    @app_commands.describe(venue="Counter-propose a venue", when="Counter-propose a time")
    @app_commands.choices(decision=DECISION_CHOICES)
    async def respond(self, interaction: discord.Interaction, challenge_id: int,
                      decision: app_commands.Choice[str],
                      venue: Optional[str] = None, when: Optional[str] = None):
        await interaction.response.defer()
        me = await self._me(interaction)
        challenge = await self.challenge_ops.respond(
            challenge_id, me.id, decision.value, venue=venue, proposed_time=_parse_when(when)
        )
        verb = "accepted" if challenge.status == ChallengeStatus.NEGOTIATING else "declined"
        await interaction.followup.send(
            content=f"Challenge #{challenge.id} {verb}.", embed=build_challenge_embed(challenge)
        )

    @app_commands.command(name="details", description="Change venue or time of an accepted challenge")
    async def details(self, interaction: discord.Interaction, challenge_id: int,
                      venue: Optional[str] = None, when: Optional[str] = None):
        me = await self._me(interaction)
        challenge = await self.challenge_ops.update_details(
            challenge_id, me.id, venue=venue, proposed_time=_parse_when(when)
        )
        await interaction.response.send_message(embed=build_challenge_embed(challenge))

    @app_commands.command(name="golive", description="Start an accepted match and notify everyone")
    @app_commands.describe(stream_url="Optional link where people can watch")
    async def golive(self, interaction: discord.Interaction, challenge_id: int, stream_url: Optional[str] = None):
        await interaction.response.defer()
        me = await self._me(interaction)
        challenge = await self.challenge_ops.go_live(challenge_id, actor_id=me.id, stream_url=stream_url)
        await self._open_scoreboard(interaction, challenge)

    @app_commands.command(name="stream", description="Set the stream link for a live match")
    async def stream(self, interaction: discord.Interaction, challenge_id: int, url: str):
        me = await self._me(interaction)
        challenge = await self.challenge_ops.set_stream_url(challenge_id, me.id, url)
        await interaction.response.send_message(f"{UIConstants.LIVE_EMOJI} Watch challenge #{challenge.id}: {challenge.stream_url}")

    @app_commands.command(name="scoreboard", description="Open the live scoreboard for a match")
    async def scoreboard(self, interaction: discord.Interaction, challenge_id: int):
        await interaction.response.defer()
        challenge = await self.challenge_ops.get_challenge(challenge_id)
        if challenge.status != ChallengeStatus.LIVE:
            await interaction.followup.send(embed=build_challenge_embed(challenge))
            return
        await self._open_scoreboard(interaction, challenge)

    async def _open_scoreboard(self, interaction: discord.Interaction, challenge):
        session = await self.bot.score_hub.open_session(challenge.id, challenge.games_to_win)
        view = ScoreboardView(challenge, session, self.challenge_ops)
        view.message = await interaction.followup.send(embed=view.current_embed(), view=view, wait=True)

    @app_commands.command(name="finalize", description="Report the final score of a live match")
    @app_commands.describe(
        challenger_score="Games won by the player who sent the challenge",
        challenged_score="Games won by the player who was challenged"
    )
    async def finalize(self, interaction: discord.Interaction, challenge_id: int,
                       challenger_score: app_commands.Range[int, 0, 99],
                       challenged_score: app_commands.Range[int, 0, 99]):
        await interaction.response.defer()
        me = await self._me(interaction)
        result = await self.challenge_ops.finalize(challenge_id, challenger_score, challenged_score, actor_id=me.id)

        embed = build_challenge_embed(result.challenge)
        if result.settlement.swapped:
            embed.add_field(
                name="Ladder Update",
                value=f"Moved from #{result.settlement.winner_old_rank} to #{result.settlement.winner_new_rank}",
                inline=False
            )
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="challenges", description="List your challenges")
    @app_commands.choices(view=LIST_CHOICES)
    async def challenges(self, interaction: discord.Interaction, view: Optional[app_commands.Choice[str]] = None):
        me = await self._me(interaction)
        role = view.value if view else "any"
        challenges = await self.challenge_ops.list_for_profile(me.id, role=role, statuses=OPEN_STATUSES)

        rows = []
        for challenge in challenges:
            if challenge.status not in OPEN_STATUSES:
                continue
            other = challenge.challenged if challenge.challenger_id == me.id else challenge.challenger
            direction = "→" if challenge.challenger_id == me.id else "←"
            rows.append((challenge, f"{direction} {other.display_name}"))

        await interaction.response.send_message(
            embed=build_challenge_list_embed("Your Open Challenges", rows), ephemeral=True
        )

    @app_commands.command(name="history", description="Show recent results")
    async def history(self, interaction: discord.Interaction, member: Optional[discord.Member] = None):
        target = await self._member_profile(member or interaction.user)
        matches = await self.challenge_ops.get_match_history(target.id, limit=10)

        rows = []
        for match in matches:
            won = match.winner_id == target.id
            other = match.challenged if match.challenger_id == target.id else match.challenger
            rows.append((match, f"{'W' if won else 'L'} {match.final_score} vs {other.display_name}"))

        await interaction.response.send_message(
            embed=build_challenge_list_embed(f"Recent Matches: {target.display_name}", rows)
        )


async def setup(bot):
    await bot.add_cog(LadderCog(bot))
