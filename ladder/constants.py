"""
Ladder-wide constants for the Capital Ladder engine.

Channel naming, broadcast event names and display values shared between
the operations layer, the realtime services and the Discord UI.
"""

class ChannelConstants:
    """Constants for realtime channel keys."""

    # Per-match scoreboard channel, formatted with the challenge id
    MATCH_CHANNEL_PREFIX = "match:"
    SCORE_UPDATE_EVENT = "score-update"

    # Entity change feed, formatted with the table name
    ENTITY_CHANNEL_PREFIX = "entity:"

class PushConstants:
    """Push notification payload types understood by the mobile client."""

    CHALLENGE_RECEIVED = "CHALLENGE_RECEIVED"
    CHALLENGE_ACCEPTED = "CHALLENGE_ACCEPTED"
    CHALLENGE_DECLINED = "CHALLENGE_DECLINED"
    LIVE_MATCH = "LIVE_MATCH"
    MATCH_RESULT = "MATCH_RESULT"

    # Expo accepts at most 100 messages per request
    MAX_BATCH_SIZE = 100

class UIConstants:
    """Constants for Discord UI elements."""

    DEFAULT_EMBED_COLOR = 0x87a96b  # Felt green
    GOLD_RANK_COLOR = 0xffd700     # Gold for the #1 spot
    LIVE_COLOR = 0xf44336          # Red for live matches
    ERROR_COLOR = 0xe74c3c
    SUCCESS_COLOR = 0x2ecc71

    LADDER_PAGE_SIZE = 15

    TROPHY_EMOJI = "🏆"
    LIVE_EMOJI = "🔴"
    COOLDOWN_EMOJI = "⏳"
