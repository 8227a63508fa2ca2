import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    """Process configuration read from environment variables.

    Values that admins tune at runtime (rate limits, minimum occupancy,
    chat mode) are not here; they live in the ``settings`` table and are
    served by ``SettingsService`` as a typed snapshot.
    """

    # Durable store
    database_url: str = os.getenv(
        "DATABASE_URL", "sqlite+aiosqlite:///./data/radiochat.db"
    )

    # Redis
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
    redis_db: int = int(os.getenv("REDIS_DB", "0"))
    redis_password: str = os.getenv("REDIS_PASSWORD", "")
    # Prefix for every key and channel, lets several instances share one Redis
    redis_prefix: str = os.getenv("REDIS_PREFIX", "")

    # Chat
    max_message_length: int = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "500"))
    max_username_length: int = int(os.getenv("CHAT_MAX_USERNAME_LENGTH", "50"))
    history_limit: int = int(os.getenv("CHAT_HISTORY_LIMIT", "100"))

    # Maintenance
    cleanup_interval_seconds: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
    deleted_message_retention_days: int = int(
        os.getenv("DELETED_MESSAGE_RETENTION_DAYS", "30")
    )

    # Timezone
    timezone: str = os.getenv("TIMEZONE", "UTC")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir: str = os.getenv("LOG_DIR", "logs")
