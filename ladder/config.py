import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Ladder configuration settings"""

    # Discord settings
    DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
    DISCORD_GUILD_ID = int(os.getenv('DISCORD_GUILD_ID', 0))
    DISCORD_GUILD_IDS = os.getenv('DISCORD_GUILD_IDS', '')  # Comma-separated for multi-guild support
    OWNER_DISCORD_ID = int(os.getenv('OWNER_DISCORD_ID', 0))

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///ladder.db')

    # Realtime settings (empty means in-process broadcasting)
    REDIS_URL = os.getenv('REDIS_URL', '')

    # Push delivery
    EXPO_PUSH_URL = os.getenv('EXPO_PUSH_URL', 'https://exp.host/--/api/v2/push/send')
    PUSH_TIMEOUT_SECONDS = float(os.getenv('PUSH_TIMEOUT_SECONDS', 10))

    # Bot settings
    COMMAND_PREFIX = os.getenv('COMMAND_PREFIX', '!')
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'

    # Ladder rules
    CHALLENGE_RANGE = int(os.getenv('CHALLENGE_RANGE', 5))  # Max rank distance between challenger and target
    TOP_RANK_UNRESTRICTED = os.getenv('TOP_RANK_UNRESTRICTED', 'True').lower() == 'true'
    CHALLENGE_DEADLINE_DAYS = 14
    DEFAULT_PROPOSED_TIME_DAYS = 2
    LOSS_COOLDOWN_HOURS = 24
    DEFAULT_VENUE = 'TBD'

    # Race settings
    DEFAULT_GAMES_TO_WIN = 7
    MIN_GAMES_TO_WIN = 3
    MAX_GAMES_TO_WIN = 13

    # Engagement points
    POINTS_CHALLENGE = 2
    POINTS_PLAY = 1
    POINTS_WIN = 3

    # Housekeeping
    EXPIRY_SWEEP_MINUTES = 60

    @classmethod
    def get_guild_ids(cls):
        """Get list of guild IDs for command syncing"""
        if cls.DISCORD_GUILD_IDS:
            try:
                return [int(guild_id.strip()) for guild_id in cls.DISCORD_GUILD_IDS.split(',') if guild_id.strip()]
            except ValueError:
                raise ValueError("DISCORD_GUILD_IDS must be comma-separated integers")
        elif cls.DISCORD_GUILD_ID:
            return [cls.DISCORD_GUILD_ID]
        else:
            # Global sync
            return []

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DISCORD_TOKEN:
            raise ValueError("DISCORD_TOKEN is required")
        if not cls.OWNER_DISCORD_ID:
            raise ValueError("OWNER_DISCORD_ID is required")
        if cls.CHALLENGE_RANGE < 1:
            raise ValueError("CHALLENGE_RANGE must be a positive integer")
        if not cls.MIN_GAMES_TO_WIN <= cls.DEFAULT_GAMES_TO_WIN <= cls.MAX_GAMES_TO_WIN:
            raise ValueError("DEFAULT_GAMES_TO_WIN must fall inside the race bounds")
