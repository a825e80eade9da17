"""Runtime configuration for the NotebookLM account pool.

Everything is read from ``NOTEBOOKLM_*`` environment variables. Server
transport options live in ``server.main()`` as argparse flags.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .constants import DEFAULT_DAILY_QUOTA

ENCRYPTION_KEY_ENV = "NOTEBOOKLM_ENCRYPTION_KEY"


def default_data_dir() -> Path:
    """Get the default data directory (not created here)."""
    return Path.home() / ".notebooklm-pool"


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Settings shared by the account store, browser sessions and the server."""

    data_dir: Path = field(default_factory=default_data_dir)
    headless: bool = True
    max_sessions: int = 10
    session_timeout_minutes: float = 15.0

    # Answer-wait protocol
    answer_timeout_seconds: float = 120.0
    answer_poll_interval_ms: int = 1000
    answer_stable_polls: int = 8

    # Auto-login
    auto_login_timeout_seconds: float = 120.0
    alert_webhook: str | None = None

    # Human-like pacing
    stealth_enabled: bool = True
    typing_wpm: int = 160

    viewport_width: int = 1024
    viewport_height: int = 768
    default_quota_limit: int = DEFAULT_DAILY_QUOTA
    debug: bool = False

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()

    @property
    def accounts_file(self) -> Path:
        return self.data_dir / "accounts.json"

    @property
    def accounts_dir(self) -> Path:
        return self.data_dir / "accounts"

    @property
    def browser_state_dir(self) -> Path:
        """Persisted state used when no accounts are configured."""
        return self.data_dir / "browser_state"

    @property
    def chrome_profile_dir(self) -> Path:
        return self.data_dir / "chrome_profile"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """Build a config from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ`` (for tests).
        """
        env = os.environ if environ is None else environ
        data_dir = env.get("NOTEBOOKLM_DATA_DIR")
        return cls(
            data_dir=Path(data_dir) if data_dir else default_data_dir(),
            headless=_env_bool(env, "NOTEBOOKLM_HEADLESS", True),
            max_sessions=int(env.get("NOTEBOOKLM_MAX_SESSIONS", "10")),
            session_timeout_minutes=float(env.get("NOTEBOOKLM_SESSION_TIMEOUT", "15")),
            answer_timeout_seconds=float(env.get("NOTEBOOKLM_QUERY_TIMEOUT", "120.0")),
            answer_poll_interval_ms=int(env.get("NOTEBOOKLM_POLL_INTERVAL_MS", "1000")),
            answer_stable_polls=int(env.get("NOTEBOOKLM_STABLE_POLLS", "8")),
            auto_login_timeout_seconds=float(env.get("NOTEBOOKLM_LOGIN_TIMEOUT", "120.0")),
            alert_webhook=env.get("NOTEBOOKLM_ALERT_WEBHOOK") or None,
            stealth_enabled=_env_bool(env, "NOTEBOOKLM_STEALTH", True),
            typing_wpm=int(env.get("NOTEBOOKLM_TYPING_WPM", "160")),
            default_quota_limit=int(env.get("NOTEBOOKLM_DAILY_QUOTA", str(DEFAULT_DAILY_QUOTA))),
            debug=_env_bool(env, "NOTEBOOKLM_MCP_DEBUG", False),
        )
