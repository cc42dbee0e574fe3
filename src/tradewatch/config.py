"""Configuration for the web app and the live dashboard client."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from typing import Mapping, Optional


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return max(0.0, float(raw))
    except ValueError:
        return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Static configuration resolved once per process."""

    # Connection string passed to SQLAlchemy (URL or libpq DSN).
    database_url: str = "sqlite:///tradewatch.db"

    # NOTIFY / SSE channel shared by every dashboard view
    channel: str = "trading"

    basic_auth_user: Optional[str] = None
    basic_auth_password: Optional[str] = None
    secret_key: str = ""

    # Quiet periods (seconds) per source table
    history_quiet_sec: float = 3.0
    accounts_quiet_sec: float = 5.0

    # No history update within this window -> account is inactive
    inactive_after_sec: int = 300

    # SSE keep-alive cadence
    sse_ping_sec: int = 5

    log_level: str = "INFO"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.basic_auth_user and self.basic_auth_password)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables."""
        env = os.environ if env is None else env
        database_url = (
            env.get("TRADEWATCH_DATABASE_URL")
            or env.get("POSTGRESQL_LIVE_CONN_STRING")
            or cls.database_url
        )
        return cls(
            database_url=database_url,
            channel=env.get("TRADEWATCH_CHANNEL") or cls.channel,
            basic_auth_user=env.get("BASIC_AUTH_USER") or None,
            basic_auth_password=env.get("BASIC_AUTH_PASSWORD") or None,
            secret_key=(
                env.get("TRADEWATCH_SECRET_KEY") or secrets.token_hex(32)
            ),
            history_quiet_sec=_env_float(
                env, "TRADEWATCH_HISTORY_QUIET_SEC", cls.history_quiet_sec
            ),
            accounts_quiet_sec=_env_float(
                env, "TRADEWATCH_ACCOUNTS_QUIET_SEC", cls.accounts_quiet_sec
            ),
            inactive_after_sec=_env_int(
                env, "TRADEWATCH_INACTIVE_AFTER_SEC", cls.inactive_after_sec
            ),
            sse_ping_sec=_env_int(
                env, "TRADEWATCH_SSE_PING_SEC", cls.sse_ping_sec
            ),
            log_level=(
                env.get("TRADEWATCH_LOG_LEVEL")
                or env.get("LOG_LEVEL")
                or cls.log_level
            ),
        )
