"""Ask-question orchestration.

Ties the account pool, auto-login and the session registry together::

    pick account -> (auto-login) -> session -> ask -> record usage

Every public coroutine returns a result dict; failures are reported as
``{"status": "error", ...}`` instead of raised.
"""

import asyncio
import logging
from typing import Any

from .accounts import AccountStore
from .auth import AuthManager
from .browser import SharedContextManager
from .config import Config
from .constants import SOURCE_FORMATS, SessionStatus, SourceFormat
from .crypto import mask_email
from .errors import AuthenticationRequiredError, NotebookPoolError, SessionBusyError, ValidationError
from .login import AutoLoginEngine
from .models import Account
from .rotation import is_eligible
from .session import SessionRegistry, validate_notebook_url

logger = logging.getLogger("notebooklm_pool.service")


class NotebookService:
    """Owns the shared browser context and routes questions through it.

    With no accounts configured the service runs in single-profile mode on
    ``<data_dir>/browser_state`` and ``<data_dir>/chrome_profile``.
    """

    def __init__(
        self,
        config: Config | None = None,
        store: AccountStore | None = None,
        registry: SessionRegistry | None = None,
        login_engine: AutoLoginEngine | None = None,
    ):
        self.config = config or Config.from_env()
        self.store = store or AccountStore(
            self.config.data_dir, default_quota_limit=self.config.default_quota_limit
        )
        if registry is None:
            auth = AuthManager(self.config.browser_state_dir, self.config.chrome_profile_dir)
            registry = SessionRegistry(auth, SharedContextManager(auth, self.config), self.config)
        self.registry = registry
        self.auth_manager = registry.auth_manager
        self.context_manager = registry.context_manager
        self.login_engine = login_engine or AutoLoginEngine(self.store, self.config)
        self.current_account_id: str | None = None
        self._account_lock = asyncio.Lock()
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.store.initialize()
        self._started = True
        if self.store.has_accounts():
            account = await self._select_account()
            if account is not None:
                await self.switch_account(account.id)
        self.registry.start_cleanup_task()
        logger.info(
            f"Service started ({len(self.store.list_accounts())} account(s), "
            f"max {self.registry.max_sessions} sessions)"
        )

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        self._started = False

    async def _select_account(self) -> Account | None:
        """The current account while it stays eligible, else the rotation pick."""
        current_id = self.current_account_id or self.store.get_current_account_id()
        current = self.store.get_account(current_id) if current_id else None
        if current is not None and is_eligible(current):
            return current
        selection = await self.store.get_best_account()
        return selection.account if selection else None

    def _require_idle_sessions(self, action: str) -> None:
        busy = self.registry.busy_session_ids()
        if busy:
            raise SessionBusyError(
                f"Cannot {action} while session(s) {', '.join(busy)} are answering a question"
            )

    async def switch_account(self, account_id: str) -> Account:
        """Point the shared browser context at another account's profile.

        Open sessions belong to the previous identity and are closed.

        Raises:
            ValidationError: Unknown account id.
            SessionBusyError: A question is still in flight on an open session.
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise ValidationError(f"Account not found: {account_id}")
        if account_id == self.current_account_id:
            return account

        self._require_idle_sessions(f"switch to {account_id}")
        await self.registry.close_all_sessions()
        await self.context_manager.use_profile(account.profile_dir)
        self.auth_manager.use_state_dir(account.browser_state_dir, account.profile_dir)
        self.current_account_id = account_id
        await self.store.save_current_account_id(account_id)
        logger.info(f"Switched to account {mask_email(account.email)}")
        return account

    async def ensure_authenticated(self, show_browser: bool | None = None) -> Account | None:
        """Make sure the shared context will start signed in.

        Returns the account in use, or None in single-profile mode.

        Raises:
            AuthenticationRequiredError: No valid state and auto-login could not produce one.
        """
        await self.start()
        async with self._account_lock:
            if not self.store.has_accounts():
                if self.auth_manager.get_valid_state_path() is None:
                    raise AuthenticationRequiredError(
                        "Not authenticated. Add an account with 'notebooklm-pool-accounts add'."
                    )
                return None

            account = await self._select_account()
            if account is None:
                raise AuthenticationRequiredError(
                    "No eligible account (all disabled, out of quota or failing to log in)"
                )
            await self.switch_account(account.id)

            if self.auth_manager.get_valid_state_path() is not None:
                return account

            if not self.store.is_auto_login_enabled():
                raise AuthenticationRequiredError(
                    f"Saved login for {account.id} is missing or expired and auto-login is disabled"
                )

            # The login engine opens the same profile directory
            self._require_idle_sessions(f"log in {account.id}")
            await self.registry.close_all_sessions()
            await self.context_manager.close_context()

            result = await self.login_engine.perform_auto_login(account.id, show_browser=show_browser)
            if not result.success:
                hint = " (manual login required)" if result.requires_manual_intervention else ""
                raise AuthenticationRequiredError(f"Auto-login failed for {account.id}{hint}: {result.error}")
            return account

    async def ask_question(
        self,
        question: str,
        notebook_url: str,
        session_id: str | None = None,
        source_format: str = "none",
        show_browser: bool | None = None,
    ) -> dict[str, Any]:
        result: dict[str, Any] = {"question": question, "notebook_url": notebook_url}
        try:
            if not question or not question.strip():
                raise ValidationError("Question is required")
            notebook_url = validate_notebook_url(notebook_url)
            try:
                fmt = SOURCE_FORMATS.get(source_format)
            except ValueError as e:
                raise ValidationError(str(e)) from None

            account = await self.ensure_authenticated(show_browser)
            session = await self.registry.get_or_create_session(session_id, notebook_url)
            try:
                asked = await session.ask(question, fmt, show_browser=show_browser)
            except AuthenticationRequiredError:
                if account is not None:
                    await self.store.update_session_status(account.id, SessionStatus.EXPIRED)
                raise

            if account is not None:
                await self.store.record_usage(account.id)
                result["account_id"] = account.id

            answer = asked.answer
            if asked.citations is not None:
                answer = asked.citations.formatted_answer
                result["source_format"] = fmt.value
                result["citations"] = [c.to_dict() for c in asked.citations.citations]
                if not asked.citations.success:
                    result["citation_error"] = asked.citations.error
            elif fmt != SourceFormat.NONE:
                result["source_format"] = fmt.value
                result["citations"] = []

            result.update(
                status="success",
                answer=answer,
                session_id=session.session_id,
                session_info=session.get_info(),
            )
            return result

        except NotebookPoolError as e:
            logger.warning(f"ask_question failed: {e}")
            result.update(status="error", error=str(e), error_type=type(e).__name__)
            return result
        except Exception as e:
            logger.exception("ask_question failed unexpectedly")
            result.update(status="error", error=str(e), error_type=type(e).__name__)
            return result

    async def auto_login(
        self,
        account_id: str | None = None,
        show_browser: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        """Run auto-login for one account, or the best eligible one."""
        await self.start()
        async with self._account_lock:
            try:
                self._require_idle_sessions("run auto-login")
            except SessionBusyError as e:
                return {"status": "error", "error": str(e)}
            await self.registry.close_all_sessions()
            await self.context_manager.close_context()
            if account_id:
                login = await self.login_engine.perform_auto_login(
                    account_id, show_browser=show_browser, timeout_seconds=timeout_seconds
                )
            else:
                login = await self.login_engine.auto_login_best_account(
                    show_browser=show_browser, timeout_seconds=timeout_seconds
                )
        if login is None:
            return {"status": "error", "error": "No eligible account for auto-login"}
        return {"status": "success" if login.success else "error", **login.to_dict()}

    def get_health(self) -> dict[str, Any]:
        state_path = self.auth_manager.get_valid_state_path()
        return {
            "status": "healthy" if state_path else "needs_auth",
            "authenticated": state_path is not None,
            "current_account_id": self.current_account_id,
            "accounts": len(self.store.list_accounts()) if self.store.is_initialized else 0,
            "sessions": self.registry.get_stats(),
            "context": self.context_manager.get_context_info(),
        }
