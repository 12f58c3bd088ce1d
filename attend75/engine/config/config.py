import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """
    Settings read straight from environment variables (a .env file is honoured).
    """
    # Remote store (PostgreSQL)
    DATABASE_URL: str = os.environ.get("DATABASE_URL")
    REALTIME_CHANNEL: str = os.environ.get("REALTIME_CHANNEL", "attend75_changes")

    # Local persisted store (Redis) used for guest mode and settings cache
    LOCAL_STORE_REDIS_URL: str = os.environ.get("LOCAL_STORE_REDIS_URL", "redis://localhost:6379/0")
    LOCAL_STORE_PREFIX: str = os.environ.get("LOCAL_STORE_PREFIX", "attend75")

    # Rate limiter storage; "memory://" keeps it in-process
    RATE_LIMITER_STORAGE_URI: str = os.environ.get("RATE_LIMITER_STORAGE_URI", "memory://")

    # Sync tuning
    REMOTE_WRITE_TIMEOUT_SECONDS: float = float(os.environ.get("REMOTE_WRITE_TIMEOUT_SECONDS", 10))
    PENDING_RETRY_INTERVAL_MINUTES: int = int(os.environ.get("PENDING_RETRY_INTERVAL_MINUTES", 1))
    REALTIME_CHECK_INTERVAL_MINUTES: int = int(os.environ.get("REALTIME_CHECK_INTERVAL_MINUTES", 1))

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

# Single importable instance
settings = Config()
