"""Runtime settings read from ``AUCTION_*`` environment variables."""
import logging
import os
from dataclasses import dataclass


def _env_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ValueError(f"{name} must be at least 1")
    return value


def _env_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


@dataclass
class Settings:
    db_path: str = "auctions.db"
    bid_retries: int = 5
    raft_timeout: float = 5.0
    log_level: str = "INFO"
    usage_log: str = "server_data_usage.log"

    @classmethod
    def from_env(cls) -> "Settings":
        level = os.getenv("AUCTION_LOG_LEVEL", cls.log_level).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"AUCTION_LOG_LEVEL: unknown level {level!r}")
        return cls(
            db_path=os.getenv("AUCTION_DB_PATH", cls.db_path),
            bid_retries=_env_int("AUCTION_BID_RETRIES", cls.bid_retries),
            raft_timeout=_env_float("AUCTION_RAFT_TIMEOUT", cls.raft_timeout),
            log_level=level,
            usage_log=os.getenv("AUCTION_USAGE_LOG", cls.usage_log),
        )
