"""Data model for accounts, sessions and citations.

Persisted records serialize to the camelCase JSON layout of the account
files via ``to_dict``/``from_dict``. Runtime-only records (sessions,
citations, login results) serialize to snake_case for tool responses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .constants import (
    DEFAULT_DAILY_QUOTA,
    DEFAULT_KEEP_ALIVE_HOURS,
    ROTATION_STRATEGIES,
    RotationStrategy,
    SessionStatus,
    SourceFormat,
)
from .crypto import mask_email


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def next_utc_midnight(now: datetime | None = None) -> datetime:
    now = now or utc_now()
    tomorrow = (now.astimezone(timezone.utc) + timedelta(days=1)).date()
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)


@dataclass
class AccountConfig:
    """Identity and static settings of one pooled account."""
    id: str
    email: str
    enabled: bool = True
    priority: int = 1  # Lower is tried first
    has_credentials: bool = False
    has_totp: bool = False
    created_at: str = field(default_factory=lambda: isoformat(utc_now()))
    notes: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "email": self.email,
            "enabled": self.enabled,
            "priority": self.priority,
            "hasCredentials": self.has_credentials,
            "hasTotp": self.has_totp,
            "createdAt": self.created_at,
        }
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AccountConfig":
        return cls(
            id=data["id"],
            email=data["email"],
            enabled=data.get("enabled", True),
            priority=data.get("priority", 1),
            has_credentials=data.get("hasCredentials", False),
            has_totp=data.get("hasTotp", False),
            created_at=data.get("createdAt", isoformat(utc_now())),
            notes=data.get("notes"),
        )


@dataclass
class EncryptedCredentials:
    email_encrypted: str
    password_encrypted: str
    totp_secret_encrypted: str | None = None
    encrypted_at: str = field(default_factory=lambda: isoformat(utc_now()))

    def to_dict(self) -> dict:
        data = {
            "emailEncrypted": self.email_encrypted,
            "passwordEncrypted": self.password_encrypted,
            "encryptedAt": self.encrypted_at,
        }
        if self.totp_secret_encrypted:
            data["totpSecretEncrypted"] = self.totp_secret_encrypted
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedCredentials":
        return cls(
            email_encrypted=data["emailEncrypted"],
            password_encrypted=data["passwordEncrypted"],
            totp_secret_encrypted=data.get("totpSecretEncrypted"),
            encrypted_at=data.get("encryptedAt", ""),
        )


@dataclass
class Credentials:
    """Decrypted credentials. Hold only for the duration of a login attempt."""
    email: str
    password: str
    totp_secret: str | None = None

    def __repr__(self) -> str:
        return f"Credentials(email={self.email!r}, password='***', totp_secret={'***' if self.totp_secret else None})"


@dataclass
class AccountQuota:
    """Daily question counter.

    ``used`` only grows until ``reset_if_due`` rolls it back to 0 and moves
    ``reset_at`` to the next UTC midnight.
    """
    used: int = 0
    limit: int = DEFAULT_DAILY_QUOTA
    reset_at: str = field(default_factory=lambda: isoformat(next_utc_midnight()))
    last_updated: str = field(default_factory=lambda: isoformat(utc_now()))

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 100.0
        return round(min(100.0, self.used / self.limit * 100), 1)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def reset_if_due(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        reset_at = parse_iso(self.reset_at)
        if reset_at is not None and now < reset_at:
            return False
        self.used = 0
        self.reset_at = isoformat(next_utc_midnight(now))
        self.last_updated = isoformat(now)
        return True

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "limit": self.limit,
            "resetAt": self.reset_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccountQuota":
        quota = cls()
        quota.used = data.get("used", 0)
        quota.limit = data.get("limit", DEFAULT_DAILY_QUOTA)
        quota.reset_at = data.get("resetAt", quota.reset_at)
        quota.last_updated = data.get("lastUpdated", quota.last_updated)
        return quota


@dataclass
class AccountState:
    session_status: SessionStatus = SessionStatus.UNKNOWN
    last_activity: str | None = None
    last_login_attempt: str | None = None
    login_failures: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None

    def record_failure(self, message: str) -> None:
        now = isoformat(utc_now())
        self.session_status = SessionStatus.EXPIRED
        self.login_failures += 1
        self.consecutive_failures += 1
        self.last_error = message
        self.last_login_attempt = now

    def record_success(self) -> None:
        now = isoformat(utc_now())
        self.session_status = SessionStatus.VALID
        self.consecutive_failures = 0
        self.last_error = None
        self.last_login_attempt = now
        self.last_activity = now

    def to_dict(self) -> dict:
        data = {
            "sessionStatus": self.session_status.value,
            "lastActivity": self.last_activity,
            "lastLoginAttempt": self.last_login_attempt,
            "loginFailures": self.login_failures,
            "consecutiveFailures": self.consecutive_failures,
        }
        if self.last_error is not None:
            data["lastError"] = self.last_error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AccountState":
        try:
            status = SessionStatus(data.get("sessionStatus", "unknown"))
        except ValueError:
            status = SessionStatus.UNKNOWN
        return cls(
            session_status=status,
            last_activity=data.get("lastActivity"),
            last_login_attempt=data.get("lastLoginAttempt"),
            login_failures=data.get("loginFailures", 0),
            consecutive_failures=data.get("consecutiveFailures", 0),
            last_error=data.get("lastError"),
        )


@dataclass
class Account:
    """Config, quota and state of one account plus its on-disk locations."""
    config: AccountConfig
    quota: AccountQuota
    state: AccountState
    profile_dir: Path
    state_file_path: Path

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def email(self) -> str:
        return self.config.email

    @property
    def browser_state_dir(self) -> Path:
        return self.state_file_path.parent

    def to_summary(self) -> dict[str, Any]:
        """Tool-friendly summary. Never includes credentials."""
        return {
            "id": self.config.id,
            "email": mask_email(self.config.email),
            "enabled": self.config.enabled,
            "priority": self.config.priority,
            "has_totp": self.config.has_totp,
            "session_status": self.state.session_status.value,
            "quota_used": self.quota.used,
            "quota_limit": self.quota.limit,
            "consecutive_failures": self.state.consecutive_failures,
            "last_activity": self.state.last_activity,
            "notes": self.config.notes,
        }


@dataclass
class AccountsConfig:
    """Contents of ``accounts.json``."""
    accounts: list[AccountConfig] = field(default_factory=list)
    rotation_strategy: RotationStrategy = RotationStrategy.LEAST_USED
    keep_alive_interval_hours: float = DEFAULT_KEEP_ALIVE_HOURS
    auto_login_enabled: bool = True
    alert_webhook: str | None = None
    current_account_id: str | None = None

    def to_dict(self) -> dict:
        data = {
            "accounts": [a.to_dict() for a in self.accounts],
            "rotationStrategy": self.rotation_strategy.value,
            "keepAliveIntervalHours": self.keep_alive_interval_hours,
            "autoLoginEnabled": self.auto_login_enabled,
        }
        if self.alert_webhook:
            data["alertWebhook"] = self.alert_webhook
        if self.current_account_id:
            data["currentAccountId"] = self.current_account_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AccountsConfig":
        return cls(
            accounts=[AccountConfig.from_dict(a) for a in data.get("accounts", [])],
            rotation_strategy=ROTATION_STRATEGIES.get(data.get("rotationStrategy") or "least_used"),
            keep_alive_interval_hours=data.get("keepAliveIntervalHours", DEFAULT_KEEP_ALIVE_HOURS),
            auto_login_enabled=data.get("autoLoginEnabled", True),
            alert_webhook=data.get("alertWebhook"),
            current_account_id=data.get("currentAccountId"),
        )


@dataclass
class AccountSelection:
    account: Account
    reason: str


@dataclass
class AccountHealth:
    account_id: str
    email: str
    enabled: bool
    session_valid: bool
    quota_remaining: int
    quota_percent: float
    last_activity: str | None
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "email": self.email,
            "enabled": self.enabled,
            "session_valid": self.session_valid,
            "quota_remaining": self.quota_remaining,
            "quota_percent": self.quota_percent,
            "last_activity": self.last_activity,
            "issues": self.issues,
        }


@dataclass
class AutoLoginResult:
    success: bool
    account_id: str
    duration: float = 0.0  # milliseconds
    error: str | None = None
    requires_manual_intervention: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "account_id": self.account_id,
            "duration_ms": round(self.duration),
            "error": self.error,
            "requires_manual_intervention": self.requires_manual_intervention,
        }


@dataclass
class Citation:
    marker: str  # e.g. "[3]"
    number: int
    source_text: str
    source_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "marker": self.marker,
            "number": self.number,
            "source_text": self.source_text,
            "source_name": self.source_name,
        }


@dataclass
class CitationExtractionResult:
    original_answer: str
    formatted_answer: str
    citations: list[Citation] = field(default_factory=list)
    format: SourceFormat = SourceFormat.NONE
    success: bool = True
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "formatted_answer": self.formatted_answer,
            "citations": [c.to_dict() for c in self.citations],
            "format": self.format.value,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class AskResult:
    """Outcome of asking one question on a browser session."""
    answer: str
    citations: CitationExtractionResult | None = None
