"""Browser sessions bound to NotebookLM notebooks, and the registry that owns them."""

import asyncio
import logging
import time
import uuid
from typing import Any
from urllib.parse import urlparse

from .answers import (
    WaitOptions,
    get_latest_response_container,
    snapshot_all_responses,
    wait_for_latest_answer,
)
from .auth import AuthManager, check_if_logged_in_by_url
from .browser import SharedContextManager
from .citations import extract_citations
from .config import Config
from .constants import QUERY_INPUT_SELECTORS, SOURCE_FORMATS, SourceFormat
from .dom import require_first
from .errors import AuthenticationRequiredError, BrowserAutomationError, SessionBusyError, ValidationError
from .models import AskResult
from .stealth import human_type, random_delay, random_mouse_movement

logger = logging.getLogger("notebooklm_pool.session")


def validate_notebook_url(url: str) -> str:
    """Return the trimmed URL or raise ``ValidationError``."""
    if not url or not url.strip():
        raise ValidationError("Notebook URL is required")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc or not parsed.hostname:
        raise ValidationError(f"Notebook URL must be an absolute URL (got '{url}')")
    return url


class BrowserSession:
    """One chat page on one notebook. The page is opened on first use."""

    def __init__(
        self,
        session_id: str,
        context_manager: SharedContextManager,
        auth_manager: AuthManager,
        notebook_url: str,
        config: Config | None = None,
    ):
        self.session_id = session_id
        self.context_manager = context_manager
        self.auth_manager = auth_manager
        self.notebook_url = notebook_url
        self.config = config or Config()
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.message_count = 0
        self._page = None
        self._initialized = False
        self._ask_lock = asyncio.Lock()

    def is_initialized(self) -> bool:
        return self._initialized

    def is_busy(self) -> bool:
        """A question is in flight on this session."""
        return self._ask_lock.locked()

    def get_page(self):
        return self._page

    def update_activity(self) -> None:
        self.last_activity = max(time.time(), self.last_activity)

    def is_expired(self, timeout_seconds: float) -> bool:
        """Idle longer than ``timeout_seconds``. A timeout of 0 disables expiry."""
        if timeout_seconds == 0:
            return False
        return (time.time() - self.last_activity) > timeout_seconds

    def get_info(self) -> dict[str, Any]:
        now = time.time()
        return {
            "id": self.session_id,
            "notebook_url": self.notebook_url,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "age_seconds": round(now - self.created_at, 1),
            "inactive_seconds": round(now - self.last_activity, 1),
            "message_count": self.message_count,
        }

    async def init(self, show_browser: bool | None = None) -> None:
        """Open the notebook page.

        Raises:
            AuthenticationRequiredError: No valid saved login, or NotebookLM redirected to sign-in.
        """
        if self.auth_manager.get_valid_state_path() is None:
            raise AuthenticationRequiredError(
                "Not authenticated with NotebookLM. Run auto-login or 'notebooklm-pool-accounts login'."
            )

        headless = None if show_browser is None else not show_browser
        context = await self.context_manager.get_or_create_context(headless=headless)
        self._page = await context.new_page()
        await self._page.goto(self.notebook_url, wait_until="domcontentloaded")
        await random_delay(1000, 1500)
        if self.config.stealth_enabled:
            await random_mouse_movement(self._page, self.config.viewport_width, self.config.viewport_height)

        if not check_if_logged_in_by_url(self._page.url):
            await self._close_page()
            raise AuthenticationRequiredError("NotebookLM redirected to Google sign-in; saved login is no longer valid")

        self._initialized = True
        self.update_activity()
        logger.info(f"Session {self.session_id} opened {self.notebook_url}")

    async def ask(
        self,
        question: str,
        source_format: str | SourceFormat = SourceFormat.NONE,
        show_browser: bool | None = None,
    ) -> AskResult:
        """Submit a question and wait for the finished answer.

        Raises:
            ValidationError: Empty question or unknown source format.
            SessionBusyError: Another question is already in flight on this session.
            AuthenticationRequiredError: The session is not signed in.
            BrowserAutomationError: No input box, or no stable answer before the timeout.
        """
        if not question or not question.strip():
            raise ValidationError("Question is required")
        try:
            fmt = SOURCE_FORMATS.get(source_format)
        except ValueError as e:
            raise ValidationError(str(e)) from None

        if self.is_busy():
            raise SessionBusyError(f"Session {self.session_id} is already answering a question")

        async with self._ask_lock:
            if not self._initialized:
                await self.init(show_browser=show_browser)
            page = self._page

            if not check_if_logged_in_by_url(page.url):
                self._initialized = False
                raise AuthenticationRequiredError("Session was signed out of NotebookLM")

            known_answers = await snapshot_all_responses(page)

            element, _ = await require_first(
                "query input", page, QUERY_INPUT_SELECTORS, timeout_ms=10_000
            )
            await human_type(
                page, element, question, wpm=self.config.typing_wpm, enabled=self.config.stealth_enabled
            )
            await page.keyboard.press("Enter")
            await random_delay(500, 1000)

            answer = await wait_for_latest_answer(
                page,
                WaitOptions(
                    question=question,
                    timeout_ms=self.config.answer_timeout_seconds * 1000,
                    poll_interval_ms=self.config.answer_poll_interval_ms,
                    required_stable_polls=self.config.answer_stable_polls,
                    ignore_texts=known_answers,
                    debug=self.config.debug,
                ),
            )
            if answer is None:
                raise BrowserAutomationError(
                    f"Timeout waiting for response from NotebookLM "
                    f"({self.config.answer_timeout_seconds:.0f}s)"
                )

            citations = None
            if fmt != SourceFormat.NONE:
                container = await get_latest_response_container(page)
                citations = await extract_citations(page, answer, container, fmt)

            self.message_count += 1
            self.update_activity()
            return AskResult(answer=answer, citations=citations)

    async def reset(self) -> None:
        """Reload the notebook to start a fresh conversation."""
        if self._page is not None:
            await self._page.goto(self.notebook_url, wait_until="domcontentloaded")
        self.message_count = 0
        self.update_activity()

    async def _close_page(self) -> None:
        page, self._page = self._page, None
        if page is not None:
            await page.close()

    async def close(self) -> None:
        self._initialized = False
        await self._close_page()
        logger.info(f"Session {self.session_id} closed")


class SessionRegistry:
    """Maps session ids to live :class:`BrowserSession` objects.

    Capacity is bounded by ``max_sessions``. When a new session does not
    fit, the least recently active idle session is evicted. Sessions with a
    question in flight are never evicted or swept. Callers must not run
    two ``ask`` calls on the same session at once; the session rejects the
    second with ``SessionBusyError``.
    """

    def __init__(
        self,
        auth_manager: AuthManager,
        context_manager: SharedContextManager | None = None,
        config: Config | None = None,
        max_sessions: int | None = None,
        timeout_minutes: float | None = None,
    ):
        self.config = config or Config()
        self.auth_manager = auth_manager
        self.context_manager = context_manager or SharedContextManager(auth_manager, self.config)
        self.max_sessions = max_sessions if max_sessions is not None else self.config.max_sessions
        if self.max_sessions < 1:
            raise ValidationError(f"max_sessions must be at least 1 (got {self.max_sessions})")
        self.timeout_minutes = (
            timeout_minutes if timeout_minutes is not None else self.config.session_timeout_minutes
        )
        self._sessions: dict[str, BrowserSession] = {}
        self._cleanup_task: asyncio.Task | None = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

    async def get_or_create_session(self, session_id: str | None, notebook_url: str) -> BrowserSession:
        notebook_url = validate_notebook_url(notebook_url)
        session_id = session_id or uuid.uuid4().hex[:8]

        session = self._sessions.get(session_id)
        if session is not None:
            if session.notebook_url == notebook_url:
                session.update_activity()
                return session
            if session.is_busy():
                raise SessionBusyError(f"Session {session_id} is answering a question on {session.notebook_url}")
            logger.info(f"Session {session_id} switched notebook, recreating")
            await self.close_session(session_id)

        await self.cleanup_inactive_sessions()
        while len(self._sessions) >= self.max_sessions:
            idle = [s for s in self._sessions.values() if not s.is_busy()]
            if not idle:
                raise SessionBusyError(
                    f"Session limit {self.max_sessions} reached and every session is answering a question"
                )
            oldest = min(idle, key=lambda s: s.last_activity)
            logger.info(f"Session limit {self.max_sessions} reached, evicting {oldest.session_id}")
            await self.close_session(oldest.session_id)

        session = BrowserSession(session_id, self.context_manager, self.auth_manager, notebook_url, self.config)
        self._sessions[session_id] = session
        logger.info(f"Created session {session_id} ({len(self._sessions)}/{self.max_sessions})")
        return session

    def get_session(self, session_id: str) -> BrowserSession | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    async def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all_sessions(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.close_session(session_id)
            except Exception as e:
                logger.warning(f"Failed to close session {session_id}: {e}")
                self._sessions.pop(session_id, None)

    async def cleanup_inactive_sessions(self) -> int:
        expired = [
            s.session_id for s in self._sessions.values() if not s.is_busy() and s.is_expired(self.timeout_seconds)
        ]
        closed = 0
        for session_id in expired:
            try:
                if await self.close_session(session_id):
                    closed += 1
            except Exception as e:
                logger.warning(f"Failed to close idle session {session_id}: {e}")
                self._sessions.pop(session_id, None)
        if closed:
            logger.info(f"Closed {closed} inactive session(s)")
        return closed

    def busy_session_ids(self) -> list[str]:
        return [s.session_id for s in self._sessions.values() if s.is_busy()]

    def get_all_sessions_info(self) -> list[dict[str, Any]]:
        return [s.get_info() for s in self._sessions.values()]

    def get_stats(self) -> dict[str, Any]:
        now = time.time()
        return {
            "active_sessions": len(self._sessions),
            "max_sessions": self.max_sessions,
            "session_timeout": self.timeout_seconds,
            "total_messages": sum(s.message_count for s in self._sessions.values()),
            "oldest_session_seconds": (
                round(max(now - s.created_at for s in self._sessions.values()), 1) if self._sessions else 0
            ),
        }

    def start_cleanup_task(self, interval_seconds: float = 60) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return

        async def sweep():
            while True:
                await asyncio.sleep(interval_seconds)
                await self.cleanup_inactive_sessions()

        self._cleanup_task = asyncio.get_running_loop().create_task(sweep())

    async def stop_cleanup_task(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        await self.stop_cleanup_task()
        await self.close_all_sessions()
        await self.context_manager.close_context()
