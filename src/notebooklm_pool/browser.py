"""Persistent Playwright browser contexts.

A Chrome profile directory may be opened by one owner at a time. Sessions
share one context through :class:`SharedContextManager`; the login engine
opens its own short-lived context with :func:`launch_persistent`. Both go
through :func:`claim_profile` so a second open fails fast with
``ProfileInUseError`` instead of corrupting the profile.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from playwright.async_api import BrowserContext, Playwright, async_playwright

from .auth import AuthManager
from .config import Config
from .constants import BROWSER_LOCALE, NOTEBOOKLM_HOST, STEALTH_ARGS, USER_AGENT
from .errors import ProfileInUseError

logger = logging.getLogger("notebooklm_pool.browser")

_claimed_profiles: set[str] = set()


def is_chrome_profile_locked(profile_dir: Path) -> bool:
    """Check if another Chrome process holds the profile.

    Chrome creates a "SingletonLock" file while the profile is open.
    """
    lock_file = Path(profile_dir) / "SingletonLock"
    # SingletonLock is a dangling symlink on Linux, so exists() is not enough
    return lock_file.exists() or lock_file.is_symlink()


def claim_profile(profile_dir: Path) -> None:
    key = str(Path(profile_dir).resolve())
    if key in _claimed_profiles:
        raise ProfileInUseError(f"Browser profile already in use: {profile_dir}")
    _claimed_profiles.add(key)


def release_profile(profile_dir: Path) -> None:
    _claimed_profiles.discard(str(Path(profile_dir).resolve()))


def build_launch_options(config: Config, headless: bool) -> dict[str, Any]:
    return {
        "headless": headless,
        "args": list(STEALTH_ARGS),
        "ignore_default_args": ["--enable-automation"],
        "user_agent": USER_AGENT,
        "locale": BROWSER_LOCALE,
        "viewport": {"width": config.viewport_width, "height": config.viewport_height},
    }


def session_storage_init_script(session_data: dict) -> str:
    """JS that restores a sessionStorage snapshot on the NotebookLM origin."""
    payload = json.dumps(session_data)
    return (
        "(() => {"
        f" if (window.location.hostname !== '{NOTEBOOKLM_HOST}') return;"
        f" const data = {payload};"
        " for (const [k, v] of Object.entries(data)) {"
        "   if (sessionStorage.getItem(k) === null) sessionStorage.setItem(k, v);"
        " }"
        "})();"
    )


@dataclass
class PersistentBrowser:
    """A launched persistent context together with its Playwright driver."""
    playwright: Playwright
    context: BrowserContext
    profile_dir: Path
    headless: bool

    async def close(self) -> None:
        try:
            await self.context.close()
        except Exception as e:
            logger.debug(f"Context close failed: {e}")
        finally:
            await self.playwright.stop()
            release_profile(self.profile_dir)


async def launch_persistent(profile_dir: Path, config: Config, headless: bool) -> PersistentBrowser:
    """Launch Chromium with a persistent profile.

    Raises:
        ProfileInUseError: The profile is claimed in this process or locked by Chrome.
    """
    profile_dir = Path(profile_dir)
    claim_profile(profile_dir)
    try:
        if is_chrome_profile_locked(profile_dir):
            raise ProfileInUseError(
                f"Chrome profile {profile_dir} is locked by another browser. Close it and retry."
            )
        profile_dir.mkdir(parents=True, exist_ok=True)
        pw = await async_playwright().start()
    except BaseException:
        release_profile(profile_dir)
        raise

    try:
        context = await pw.chromium.launch_persistent_context(
            str(profile_dir), **build_launch_options(config, headless)
        )
    except BaseException:
        await pw.stop()
        release_profile(profile_dir)
        raise

    logger.info(f"Browser launched with profile at {profile_dir} (headless={headless})")
    return PersistentBrowser(playwright=pw, context=context, profile_dir=profile_dir, headless=headless)


class SharedContextManager:
    """One persistent context shared by every browser session of an identity."""

    def __init__(
        self,
        auth_manager: AuthManager,
        config: Config,
        profile_dir: Path | None = None,
        launcher=launch_persistent,
    ):
        self.auth_manager = auth_manager
        self.config = config
        self.profile_dir = Path(profile_dir) if profile_dir else config.chrome_profile_dir
        self._launch = launcher
        self._browser: PersistentBrowser | None = None
        self._lock = asyncio.Lock()

    async def get_or_create_context(self, headless: bool | None = None) -> BrowserContext:
        """Return the shared context, relaunching it if the headless mode changed."""
        headless = self.config.headless if headless is None else headless
        async with self._lock:
            if self._browser is not None and self._browser.headless != headless:
                logger.info(f"Headless mode changed to {headless}, recreating browser context")
                await self._close_locked()
            if self._browser is None:
                self._browser = await self._launch(self.profile_dir, self.config, headless)
                await self._restore_state(self._browser.context)
            return self._browser.context

    async def _restore_state(self, context: BrowserContext) -> None:
        state = self.auth_manager.load_storage_state()
        cookies = (state or {}).get("cookies") or []
        if cookies:
            try:
                await context.add_cookies(cookies)
                logger.debug(f"Injected {len(cookies)} cookies from saved state")
            except Exception as e:
                logger.warning(f"Could not inject saved cookies: {e}")

        session_data = self.auth_manager.load_session_storage()
        if session_data:
            await context.add_init_script(session_storage_init_script(session_data))

    async def _close_locked(self) -> None:
        if self._browser is None:
            return
        browser, self._browser = self._browser, None
        await browser.close()
        logger.info("Browser context closed")

    async def close_context(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def use_profile(self, profile_dir: Path) -> None:
        """Switch to another profile directory, closing the current context."""
        profile_dir = Path(profile_dir)
        if profile_dir == self.profile_dir:
            return
        await self.close_context()
        self.profile_dir = profile_dir

    def get_current_headless_mode(self) -> bool | None:
        return self._browser.headless if self._browser else None

    def get_context_info(self) -> dict[str, Any]:
        if self._browser is None:
            return {"exists": False, "pages": 0, "headless": None, "profile_dir": str(self.profile_dir)}
        return {
            "exists": True,
            "pages": len(self._browser.context.pages),
            "headless": self._browser.headless,
            "profile_dir": str(self.profile_dir),
        }
