"""Configuration management for the orchestration services.

This module provides centralized configuration loading from environment variables.
Values are read through getter functions so tests can override them with
monkeypatch; values that never change at runtime are cached.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required)
    FERNET_KEY: Encryption key for stored social account tokens (required by restream)
    SRS_RTMP_URL: Ingest server application for live sources (default: rtmp://srs:1935/live)
    LINEAR_RTMP_URL: Ingest server application for linear channels (default: rtmp://srs:1935/linear)
    HLS_ROOT: Root directory of transcoded VOD renditions (default: /storage/vod/hls)
    FFMPEG_PATH: ffmpeg executable (default: ffmpeg)
    TERMINATE_GRACE_SECONDS: SIGTERM → SIGKILL grace period (default: 10)
    CREDENTIAL_TIMEOUT_SECONDS: Bound on a Credential Resolver call (default: 15)
    PERSIST_RETRY_ATTEMPTS: Attempts for each store operation (default: 5)
    PLAYLIST_REFRESH_POLICY: wraparound | never | each_item (default: wraparound)
    RECONCILE_ON_BOOT: Sweep orphaned running/active rows at startup (default: true)
    TWITCH_CLIENT_ID: Client-Id header for the Twitch Helix API (optional)
    LOG_LEVEL: structlog level filter (default: INFO)

Usage:
    from streamcore.config import get_database_url, get_terminate_grace_seconds

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    grace = get_terminate_grace_seconds()
"""

import enum
import os
from functools import lru_cache

import structlog

from streamcore.exceptions import ConfigurationError

log = structlog.get_logger(__name__)


class PlaylistRefreshPolicy(enum.Enum):
    """When a running channel picks up playlist edits.

    Edits are never applied while an item is playing.

    WRAPAROUND: Reload the snapshot only when a looping channel wraps to index 0.
    NEVER: Keep the snapshot taken at start for the whole run.
    EACH_ITEM: Reload the snapshot between items.
    """

    WRAPAROUND = "wraparound"
    NEVER = "never"
    EACH_ITEM = "each_item"


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ConfigurationError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ConfigurationError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_bus_dsn() -> str:
    """Get the plain asyncpg DSN used by the PgQueuer pool.

    Raises:
        ConfigurationError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ConfigurationError("DATABASE_URL environment variable is required")
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)


def get_source_rtmp_url() -> str:
    """Get the ingest server application live sources publish to."""
    return os.getenv("SRS_RTMP_URL", "rtmp://srs:1935/live").rstrip("/")


def get_linear_rtmp_url() -> str:
    """Get the ingest server application linear channels publish to."""
    return os.getenv("LINEAR_RTMP_URL", "rtmp://srs:1935/linear").rstrip("/")


def get_hls_root() -> str:
    """Get the directory holding per-VOD HLS renditions."""
    return os.getenv("HLS_ROOT", "/storage/vod/hls")


def get_ffmpeg_path() -> str:
    """Get the ffmpeg executable name or path."""
    return os.getenv("FFMPEG_PATH", "ffmpeg")


def _get_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, min(maximum, float(raw)))
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default


def get_terminate_grace_seconds() -> float:
    """Get the grace period between SIGTERM and SIGKILL.

    Environment Variable:
        TERMINATE_GRACE_SECONDS: Seconds to wait for a clean exit (default: 10)

    Returns:
        Grace period in seconds, clamped to [0.1, 120].
    """
    return _get_float("TERMINATE_GRACE_SECONDS", 10.0, 0.1, 120.0)


def get_credential_timeout_seconds() -> float:
    """Get the upper bound on one Credential Resolver call.

    Returns:
        Timeout in seconds, clamped to [1, 120].
    """
    return _get_float("CREDENTIAL_TIMEOUT_SECONDS", 15.0, 1.0, 120.0)


def get_persist_retry_attempts() -> int:
    """Get the number of attempts for each store operation.

    Environment Variable:
        PERSIST_RETRY_ATTEMPTS: Attempts including the first one (default: 5)

    Returns:
        Attempt count, clamped to [1, 20].
    """
    try:
        attempts = int(os.getenv("PERSIST_RETRY_ATTEMPTS", "5"))
        return max(1, min(20, attempts))
    except ValueError:
        log.warning(
            "invalid_config_value",
            name="PERSIST_RETRY_ATTEMPTS",
            value=os.getenv("PERSIST_RETRY_ATTEMPTS"),
            using_default=5,
        )
        return 5


def get_playlist_refresh_policy() -> PlaylistRefreshPolicy:
    """Get the playlist refresh policy for running channels.

    Environment Variable:
        PLAYLIST_REFRESH_POLICY: wraparound | never | each_item (default: wraparound)

    Returns:
        PlaylistRefreshPolicy member. Unknown values fall back to WRAPAROUND.
    """
    raw = os.getenv("PLAYLIST_REFRESH_POLICY", PlaylistRefreshPolicy.WRAPAROUND.value)
    try:
        return PlaylistRefreshPolicy(raw.strip().lower())
    except ValueError:
        log.warning(
            "invalid_config_value",
            name="PLAYLIST_REFRESH_POLICY",
            value=raw,
            using_default=PlaylistRefreshPolicy.WRAPAROUND.value,
        )
        return PlaylistRefreshPolicy.WRAPAROUND


def get_reconcile_on_boot() -> bool:
    """Whether services sweep orphaned running/active rows at startup."""
    return os.getenv("RECONCILE_ON_BOOT", "true").strip().lower() not in ("0", "false", "no")


def get_twitch_client_id() -> str | None:
    """Get the Twitch application Client-Id, or None if not configured."""
    return os.getenv("TWITCH_CLIENT_ID")


def get_log_level() -> str:
    """Get the log level name (default: INFO)."""
    return os.getenv("LOG_LEVEL", "INFO").upper()
