"""Authentication state for NotebookLM browser sessions.

A login is persisted as Playwright storage state (``state.json``: cookies
and origins) plus a snapshot of ``sessionStorage`` (``session.json``). The
state counts as authenticated while at least one Google auth cookie in it
is still live.
"""

import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any

from .constants import AUTH_COOKIE_NAMES, GOOGLE_ACCOUNTS_HOST, NOTEBOOKLM_HOST

logger = logging.getLogger("notebooklm_pool.auth")


def parse_cookies_from_storage_state(cookies_list: list[dict]) -> dict[str, dict]:
    """Index cookies from Playwright storage-state format by name."""
    result = {}
    for cookie in cookies_list:
        name = cookie.get("name", "")
        if name:
            result[name] = cookie
    return result


def has_live_auth_cookie(cookies_list: list[dict], now: float | None = None) -> bool:
    """Check if any required auth cookie is present and not expired.

    Session cookies (``expires`` of -1 or missing) count as live.
    """
    now = time.time() if now is None else now
    cookies = parse_cookies_from_storage_state(cookies_list)
    for name in AUTH_COOKIE_NAMES:
        cookie = cookies.get(name)
        if cookie is None:
            continue
        expires = cookie.get("expires", -1)
        if expires is None or expires < 0 or expires > now:
            return True
    return False


def is_state_file_valid(state_file: Path) -> bool:
    """Check that a persisted state file exists and holds a live auth cookie."""
    state_file = Path(state_file)
    if not state_file.exists():
        return False
    try:
        with open(state_file) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not read browser state {state_file}: {e}")
        return False
    if not isinstance(data, dict):
        return False
    return has_live_auth_cookie(data.get("cookies") or [])


def check_if_logged_in_by_url(url: str) -> bool:
    """Check login status by URL.

    If NotebookLM redirects to accounts.google.com, the user is not logged in.
    If the URL stays on notebooklm.google.com, the user is authenticated.
    """
    if GOOGLE_ACCOUNTS_HOST in url:
        return False
    if NOTEBOOKLM_HOST in url:
        return True
    # Unknown URL - assume not logged in
    return False


class AuthManager:
    """Reads and writes the persisted browser state of one identity.

    In multi-account mode there is one state directory per account; the
    manager is pointed at the active one with :meth:`use_state_dir`.
    """

    def __init__(self, browser_state_dir: Path, chrome_profile_dir: Path | None = None):
        self.browser_state_dir = Path(browser_state_dir)
        self.chrome_profile_dir = Path(chrome_profile_dir) if chrome_profile_dir else None

    @property
    def state_file(self) -> Path:
        return self.browser_state_dir / "state.json"

    @property
    def session_file(self) -> Path:
        return self.browser_state_dir / "session.json"

    def use_state_dir(self, browser_state_dir: Path, chrome_profile_dir: Path | None = None) -> None:
        self.browser_state_dir = Path(browser_state_dir)
        if chrome_profile_dir is not None:
            self.chrome_profile_dir = Path(chrome_profile_dir)

    def has_saved_state(self) -> bool:
        return self.state_file.exists()

    def get_state_path(self) -> Path | None:
        return self.state_file if self.state_file.exists() else None

    def is_state_expired(self) -> bool:
        """True when the state file is missing, unreadable, or has no live auth cookie."""
        return not is_state_file_valid(self.state_file)

    def get_valid_state_path(self) -> Path | None:
        """Path of the state file if it is still authenticated, else None."""
        if not self.has_saved_state():
            return None
        if self.is_state_expired():
            logger.info("Saved browser state has expired auth cookies")
            return None
        return self.state_file

    def load_storage_state(self) -> dict[str, Any] | None:
        if not self.state_file.exists():
            return None
        try:
            with open(self.state_file) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load browser state: {e}")
            return None

    def load_session_storage(self) -> dict[str, Any] | None:
        if not self.session_file.exists():
            return None
        try:
            with open(self.session_file) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load session storage: {e}")
            return None

    async def save_browser_state(self, context, page=None) -> bool:
        """Persist cookies (storage state) and, when a page is given, its sessionStorage.

        Args:
            context: Playwright ``BrowserContext``.
            page: Playwright ``Page`` on the NotebookLM origin.
        """
        try:
            self.browser_state_dir.mkdir(parents=True, exist_ok=True)
            await context.storage_state(path=str(self.state_file))

            if page is not None:
                raw = await page.evaluate("() => JSON.stringify(sessionStorage)")
                session_data = json.loads(raw) if raw else {}
                with open(self.session_file, "w") as f:
                    json.dump(session_data, f, indent=2)

            logger.info(f"Browser state saved to {self.state_file}")
            return True
        except Exception as e:
            logger.error(f"Failed to save browser state: {e}")
            return False

    def clear_state(self) -> bool:
        """Delete the state and session files. Returns True if nothing is left behind."""
        ok = True
        for path in (self.state_file, self.session_file):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not delete {path}: {e}")
                ok = False
        return ok

    def hard_reset_state(self) -> bool:
        """Clear persisted state and wipe the Chrome profile as well."""
        ok = self.clear_state()
        if self.chrome_profile_dir is not None and self.chrome_profile_dir.exists():
            try:
                shutil.rmtree(self.chrome_profile_dir)
                logger.info(f"Removed Chrome profile {self.chrome_profile_dir}")
            except OSError as e:
                logger.warning(f"Could not remove Chrome profile: {e}")
                ok = False
        return ok
