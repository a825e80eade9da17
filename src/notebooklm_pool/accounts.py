"""Account store: the pool of Google accounts used to talk to NotebookLM.

Layout under the data directory::

    accounts.json                 global settings + AccountConfig list
    encryption.key                see crypto.py
    accounts/<id>/credentials.json  encrypted credentials (0600)
    accounts/<id>/quota.json
    accounts/<id>/state.json        AccountState
    accounts/<id>/browser_state/    persisted browser state (auth.py)
    accounts/<id>/profile/          Chrome profile

Every mutation goes through a per-account ``asyncio.Lock`` and is written
back with an atomic replace, so concurrent flows cannot lose updates.
"""

import asyncio
import json
import logging
import os
import shutil
import time
from pathlib import Path

from .auth import is_state_file_valid
from .constants import MAX_CONSECUTIVE_FAILURES, ROTATION_STRATEGIES, RotationStrategy, SessionStatus
from .crypto import CryptoVault, mask_email
from .errors import NotInitializedError, ValidationError
from .models import (
    Account,
    AccountConfig,
    AccountHealth,
    AccountQuota,
    AccountSelection,
    AccountState,
    AccountsConfig,
    Credentials,
    EncryptedCredentials,
    isoformat,
    utc_now,
)
from .rotation import select_account

logger = logging.getLogger("notebooklm_pool.accounts")


def write_json_atomic(path: Path, data: dict, mode: int | None = None) -> None:
    """Write JSON to a temp file next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
    if mode is not None:
        os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)


def _read_json(path: Path) -> dict | None:
    if not path.exists():
        return None
    with open(path) as f:
        return json.load(f)


class AccountStore:
    """Owns ``accounts.json`` and the per-account files, with an in-memory cache."""

    def __init__(
        self,
        data_dir: Path,
        vault: CryptoVault | None = None,
        default_quota_limit: int | None = None,
    ):
        self.data_dir = Path(data_dir)
        self.accounts_dir = self.data_dir / "accounts"
        self.config_file = self.data_dir / "accounts.json"
        self.vault = vault or CryptoVault(self.data_dir)
        self.default_quota_limit = default_quota_limit

        self._config = AccountsConfig()
        self._accounts: dict[str, Account] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._config_lock = asyncio.Lock()
        self._round_robin_index = -1
        self._initialized = False

    # ------------------------------------------------------------------
    # Paths and persistence helpers
    # ------------------------------------------------------------------

    def _account_dir(self, account_id: str) -> Path:
        return self.accounts_dir / account_id

    def _credentials_file(self, account_id: str) -> Path:
        return self._account_dir(account_id) / "credentials.json"

    def _quota_file(self, account_id: str) -> Path:
        return self._account_dir(account_id) / "quota.json"

    def _state_file(self, account_id: str) -> Path:
        return self._account_dir(account_id) / "state.json"

    def _build_account(self, config: AccountConfig, quota: AccountQuota, state: AccountState) -> Account:
        account_dir = self._account_dir(config.id)
        return Account(
            config=config,
            quota=quota,
            state=state,
            profile_dir=account_dir / "profile",
            state_file_path=account_dir / "browser_state" / "state.json",
        )

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("AccountStore not initialized. Call initialize() first.")

    def _save_config(self) -> None:
        self._config.accounts = [a.config for a in self._accounts.values()]
        write_json_atomic(self.config_file, self._config.to_dict())

    def _save_account_runtime(self, account: Account) -> None:
        write_json_atomic(self._quota_file(account.id), account.quota.to_dict())
        write_json_atomic(self._state_file(account.id), account.state.to_dict())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the directories and default config if needed, then load accounts."""
        if self._initialized:
            return

        self.accounts_dir.mkdir(parents=True, exist_ok=True)
        data = _read_json(self.config_file)
        if data is None:
            self._config = AccountsConfig()
            write_json_atomic(self.config_file, self._config.to_dict())
            logger.info(f"Created default accounts config at {self.config_file}")
        else:
            self._config = AccountsConfig.from_dict(data)

        self._accounts = {}
        for config in self._config.accounts:
            quota_data = _read_json(self._quota_file(config.id))
            state_data = _read_json(self._state_file(config.id))
            quota = AccountQuota.from_dict(quota_data) if quota_data else AccountQuota()
            state = AccountState.from_dict(state_data) if state_data else AccountState()
            account = self._build_account(config, quota, state)
            if account.quota.reset_if_due():
                self._save_account_runtime(account)
            self._accounts[config.id] = account

        self._initialized = True
        logger.info(f"Loaded {len(self._accounts)} account(s) from {self.config_file}")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def _new_account_id(self) -> str:
        candidate = int(time.time() * 1000)
        while f"account-{candidate}" in self._accounts or self._account_dir(f"account-{candidate}").exists():
            candidate += 1
        return f"account-{candidate}"

    async def add_account(
        self,
        email: str,
        password: str,
        totp_secret: str | None = None,
        *,
        priority: int | None = None,
        notes: str | None = None,
        enabled: bool = True,
        quota_limit: int | None = None,
    ) -> str:
        """Add an account and return its id.

        Raises:
            NotInitializedError: ``initialize()`` was not called.
            ValidationError: Missing e-mail/password or a duplicate e-mail.
        """
        self._require_initialized()
        email = (email or "").strip()
        if "@" not in email:
            raise ValidationError("A valid e-mail address is required")
        if not password:
            raise ValidationError("Password is required")
        if any(a.email.lower() == email.lower() for a in self._accounts.values()):
            raise ValidationError(f"Account already exists for {mask_email(email)}")

        totp_secret = (totp_secret or "").replace(" ", "") or None

        async with self._config_lock:
            account_id = self._new_account_id()
            encrypted = EncryptedCredentials(
                email_encrypted=self.vault.encrypt(email),
                password_encrypted=self.vault.encrypt(password),
                totp_secret_encrypted=self.vault.encrypt(totp_secret) if totp_secret else None,
            )
            config = AccountConfig(
                id=account_id,
                email=email,
                enabled=enabled,
                priority=priority if priority is not None else len(self._accounts) + 1,
                has_credentials=True,
                has_totp=totp_secret is not None,
                notes=notes,
            )
            quota = AccountQuota()
            limit = quota_limit if quota_limit is not None else self.default_quota_limit
            if limit is not None:
                quota.limit = limit
            account = self._build_account(config, quota, AccountState())

            account.profile_dir.mkdir(parents=True, exist_ok=True)
            account.browser_state_dir.mkdir(parents=True, exist_ok=True)
            write_json_atomic(self._credentials_file(account_id), encrypted.to_dict(), mode=0o600)
            self._save_account_runtime(account)
            self._accounts[account_id] = account
            self._save_config()

        logger.info(f"Added account {account_id} ({mask_email(email)})")
        return account_id

    async def remove_account(self, account_id: str) -> bool:
        """Delete an account and all of its files. Returns False if unknown."""
        self._require_initialized()
        if account_id not in self._accounts:
            return False

        async with self._lock_for(account_id):
            async with self._config_lock:
                account = self._accounts.pop(account_id)
                if self._config.current_account_id == account_id:
                    self._config.current_account_id = None
                self._save_config()
            shutil.rmtree(self._account_dir(account_id), ignore_errors=True)
        self._locks.pop(account_id, None)

        logger.info(f"Removed account {account_id} ({mask_email(account.email)})")
        return True

    async def update_account(
        self,
        account_id: str,
        *,
        enabled: bool | None = None,
        priority: int | None = None,
        notes: str | None = None,
        quota_limit: int | None = None,
    ) -> Account:
        """Explicitly edit an account's config.

        Raises:
            ValidationError: Unknown account id.
        """
        self._require_initialized()
        account = self._accounts.get(account_id)
        if account is None:
            raise ValidationError(f"Account not found: {account_id}")

        async with self._lock_for(account_id):
            if enabled is not None:
                account.config.enabled = enabled
            if priority is not None:
                account.config.priority = priority
            if notes is not None:
                account.config.notes = notes or None
            if quota_limit is not None:
                account.quota.limit = quota_limit
                self._save_account_runtime(account)
            async with self._config_lock:
                self._save_config()
        return account

    def get_account(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def list_accounts(self) -> list[Account]:
        return list(self._accounts.values())

    def has_accounts(self) -> bool:
        return bool(self._accounts)

    async def get_credentials(self, account_id: str) -> Credentials | None:
        """Decrypt an account's credentials. Returns None if the account or file is missing.

        Decryption errors propagate.
        """
        if account_id not in self._accounts:
            return None
        data = _read_json(self._credentials_file(account_id))
        if data is None:
            logger.warning(f"No credentials file for account {account_id}")
            return None
        encrypted = EncryptedCredentials.from_dict(data)
        return Credentials(
            email=self.vault.decrypt(encrypted.email_encrypted),
            password=self.vault.decrypt(encrypted.password_encrypted),
            totp_secret=(
                self.vault.decrypt(encrypted.totp_secret_encrypted)
                if encrypted.totp_secret_encrypted
                else None
            ),
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def record_usage(self, account_id: str) -> None:
        """Count one completed question against the account's daily quota."""
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning(f"record_usage: unknown account {account_id}")
            return
        async with self._lock_for(account_id):
            now = utc_now()
            account.quota.reset_if_due(now)
            account.quota.used += 1
            account.quota.last_updated = isoformat(now)
            account.state.last_activity = isoformat(now)
            self._save_account_runtime(account)
        logger.debug(f"Account {account_id} usage {account.quota.used}/{account.quota.limit}")

    async def record_login_failure(self, account_id: str, message: str) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning(f"record_login_failure: unknown account {account_id}")
            return
        async with self._lock_for(account_id):
            account.state.record_failure(message)
            self._save_account_runtime(account)
        logger.warning(
            f"Login failed for {mask_email(account.email)} "
            f"({account.state.consecutive_failures} consecutive): {message}"
        )

    async def record_login_success(self, account_id: str) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning(f"record_login_success: unknown account {account_id}")
            return
        async with self._lock_for(account_id):
            account.state.record_success()
            self._save_account_runtime(account)
        logger.info(f"Login succeeded for {mask_email(account.email)}")

    async def update_session_status(self, account_id: str, status: SessionStatus) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            return
        async with self._lock_for(account_id):
            account.state.session_status = status
            self._save_account_runtime(account)

    # ------------------------------------------------------------------
    # Rotation and global settings
    # ------------------------------------------------------------------

    async def get_best_account(self) -> AccountSelection | None:
        """Pick an account with the configured rotation strategy, or None."""
        for account in list(self._accounts.values()):
            async with self._lock_for(account.id):
                if account.quota.reset_if_due():
                    self._save_account_runtime(account)

        selection, self._round_robin_index = select_account(
            self.list_accounts(),
            self._config.rotation_strategy,
            self._round_robin_index,
        )
        if selection is None:
            logger.warning("No eligible account available")
        else:
            logger.debug(f"Selected {selection.account.id}: {selection.reason}")
        return selection

    def get_rotation_strategy(self) -> RotationStrategy:
        return self._config.rotation_strategy

    async def set_rotation_strategy(self, strategy: str | RotationStrategy) -> RotationStrategy:
        self._require_initialized()
        resolved = ROTATION_STRATEGIES.get(strategy)
        async with self._config_lock:
            self._config.rotation_strategy = resolved
            self._save_config()
        return resolved

    def is_auto_login_enabled(self) -> bool:
        return self._config.auto_login_enabled

    async def set_auto_login_enabled(self, enabled: bool) -> None:
        self._require_initialized()
        async with self._config_lock:
            self._config.auto_login_enabled = enabled
            self._save_config()

    def get_alert_webhook(self) -> str | None:
        return self._config.alert_webhook

    def get_current_account_id(self) -> str | None:
        return self._config.current_account_id

    async def save_current_account_id(self, account_id: str | None) -> None:
        self._require_initialized()
        async with self._config_lock:
            self._config.current_account_id = account_id
            self._save_config()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> list[AccountHealth]:
        """Report issues per account."""
        report = []
        for account in self._accounts.values():
            issues = []
            if not account.config.enabled:
                issues.append("Account disabled")
            if account.quota.used >= account.quota.limit:
                issues.append("Quota exhausted")
            if not account.state_file_path.exists():
                issues.append("No state file (needs login)")
            elif not is_state_file_valid(account.state_file_path):
                issues.append("Session expired (auth cookies expired)")
            if account.state.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                issues.append(
                    f"{account.state.consecutive_failures} consecutive login failures"
                    + (f": {account.state.last_error}" if account.state.last_error else "")
                )
            if not self._credentials_file(account.id).exists():
                issues.append("No stored credentials")

            report.append(
                AccountHealth(
                    account_id=account.id,
                    email=mask_email(account.email),
                    enabled=account.config.enabled,
                    session_valid=is_state_file_valid(account.state_file_path),
                    quota_remaining=account.quota.remaining,
                    quota_percent=account.quota.percent_used,
                    last_activity=account.state.last_activity,
                    issues=issues,
                )
            )
        return report
