"""Unattended Google sign-in for pooled accounts.

One attempt walks through::

    navigate -> email -> password -> (TOTP) -> interstitials -> verify

Each step resolves its input from an ordered selector list. A step whose
candidates never appear fails the attempt and flags it for manual
intervention. Every failure is recorded on the account before the result
is returned.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import struct
import time

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .accounts import AccountStore
from .alerts import AlertNotifier
from .auth import AuthManager, check_if_logged_in_by_url
from .browser import launch_persistent
from .config import Config
from .constants import (
    EMAIL_SELECTORS,
    GOOGLE_ACCOUNTS_HOST,
    INTERSTITIAL_SELECTORS,
    MANUAL_CHALLENGE_MARKERS,
    NEXT_BUTTON_SELECTORS,
    NOTEBOOKLM_HOST,
    NOTEBOOKLM_URL,
    PASSWORD_SELECTORS,
    TOTP_SELECTORS,
)
from .crypto import mask_email
from .dom import click_first, require_first, resolve_first
from .errors import BrowserAutomationError, LoginChallengeError, SelectorNotFoundError, VaultError
from .models import Account, AutoLoginResult, Credentials
from .stealth import human_type, random_delay, realistic_click

logger = logging.getLogger("notebooklm_pool.login")

STEP_TIMEOUT_MS = 15_000
TOTP_DETECT_TIMEOUT_MS = 10_000


def generate_totp(secret: str, for_time: float | None = None, digits: int = 6, step: int = 30) -> str:
    """RFC 6238 TOTP (HMAC-SHA1) for a base32 secret.

    Raises:
        ValueError: The secret is empty or not valid base32.
    """
    normalized = (secret or "").replace(" ", "").upper()
    if not normalized:
        raise ValueError("TOTP secret is empty")
    # Pad to a multiple of 8 for base32 decode
    normalized += "=" * ((-len(normalized)) % 8)
    try:
        key = base64.b32decode(normalized, casefold=True)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid TOTP secret: {e}") from None

    counter = int((time.time() if for_time is None else for_time) // step)
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = (struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF) % (10 ** digits)
    return f"{code:0{digits}d}"


def _is_on_notebooklm(url: str) -> bool:
    return NOTEBOOKLM_HOST in url and GOOGLE_ACCOUNTS_HOST not in url


class AutoLoginEngine:
    """Drives Google sign-in for one account at a time."""

    def __init__(
        self,
        store: AccountStore,
        config: Config,
        notifier: AlertNotifier | None = None,
        launcher=launch_persistent,
    ):
        self.store = store
        self.config = config
        self._notifier = notifier
        self._launch = launcher

    @property
    def notifier(self) -> AlertNotifier:
        # accounts.json is only readable once the store is initialized
        if self._notifier is None:
            self._notifier = AlertNotifier(self.config.alert_webhook or self.store.get_alert_webhook())
        return self._notifier

    async def auto_login_best_account(self, **kwargs) -> AutoLoginResult | None:
        """Log in with the account the rotation strategy picks. None if no account is eligible."""
        selection = await self.store.get_best_account()
        if selection is None:
            return None
        logger.info(f"Auto-login with {selection.account.id}: {selection.reason}")
        return await self.perform_auto_login(selection.account.id, **kwargs)

    async def perform_auto_login(
        self,
        account_id: str,
        *,
        show_browser: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> AutoLoginResult:
        start = time.monotonic()

        def result(success: bool, error: str | None = None, manual: bool = False) -> AutoLoginResult:
            return AutoLoginResult(
                success=success,
                account_id=account_id,
                duration=(time.monotonic() - start) * 1000,
                error=error,
                requires_manual_intervention=manual,
            )

        account = self.store.get_account(account_id)
        if account is None:
            return result(False, "Account not found")

        headless = self.config.headless if show_browser is None else not show_browser
        timeout = timeout_seconds or self.config.auto_login_timeout_seconds
        logger.info(f"Starting auto-login for {mask_email(account.email)} (headless={headless})")

        browser = None
        try:
            credentials = await self.store.get_credentials(account_id)
            if credentials is None:
                return result(False, "No credentials available", manual=True)

            browser = await self._launch(account.profile_dir, self.config, headless)
            context = browser.context
            page = context.pages[0] if context.pages else await context.new_page()

            await asyncio.wait_for(self._run_flow(page, account, credentials), timeout=timeout)
            del credentials

            auth = AuthManager(account.browser_state_dir, account.profile_dir)
            if not await auth.save_browser_state(context, page):
                raise BrowserAutomationError("Logged in but could not save browser state")

            await self.store.record_login_success(account_id)
            return result(True)

        except asyncio.TimeoutError:
            message = f"Login timed out after {timeout:.0f}s"
            await self.store.record_login_failure(account_id, message)
            return result(False, message)
        except (SelectorNotFoundError, LoginChallengeError, VaultError) as e:
            await self.store.record_login_failure(account_id, str(e))
            await self.notifier.send(
                "manual_login_required",
                f"Account {mask_email(account.email)} needs manual login: {e}",
                account_id=account_id,
            )
            return result(False, str(e), manual=True)
        except Exception as e:
            logger.error(f"Auto-login failed for {mask_email(account.email)}: {e}")
            await self.store.record_login_failure(account_id, str(e))
            return result(False, str(e))
        finally:
            if browser is not None:
                await browser.close()

    async def _run_flow(self, page, account: Account, credentials: Credentials) -> None:
        await page.goto(NOTEBOOKLM_URL, wait_until="domcontentloaded")
        await random_delay(800, 1500)

        if check_if_logged_in_by_url(page.url):
            logger.info("Profile already signed in")
            return

        await self._enter_email(page, credentials.email)
        await self._dismiss_interstitials(page)
        await self._enter_password(page, credentials.password)

        if account.config.has_totp and credentials.totp_secret:
            await self._enter_totp(page, credentials.totp_secret)

        await self._dismiss_interstitials(page)
        await self._verify(page)

    async def _submit(self, page) -> None:
        stealth = self.config.stealth_enabled
        found = await resolve_first(page, NEXT_BUTTON_SELECTORS)
        if found is None:
            await page.keyboard.press("Enter")
        else:
            await realistic_click(page, found[0], enabled=stealth)
        await random_delay(1500, 2500)

    async def _enter_email(self, page, email: str) -> None:
        element, selector = await require_first("email", page, EMAIL_SELECTORS, timeout_ms=STEP_TIMEOUT_MS)
        logger.debug(f"Email field: {selector}")
        await human_type(page, element, email, wpm=self.config.typing_wpm, enabled=self.config.stealth_enabled)
        await self._submit(page)

    async def _enter_password(self, page, password: str) -> None:
        element, selector = await require_first(
            "password", page, PASSWORD_SELECTORS, timeout_ms=STEP_TIMEOUT_MS
        )
        logger.debug(f"Password field: {selector}")
        await human_type(page, element, password, wpm=self.config.typing_wpm, enabled=self.config.stealth_enabled)
        await self._submit(page)

    async def _enter_totp(self, page, secret: str) -> None:
        found = await resolve_first(page, TOTP_SELECTORS, timeout_ms=TOTP_DETECT_TIMEOUT_MS)
        if found is None:
            if "challenge" in page.url:
                raise SelectorNotFoundError("totp", TOTP_SELECTORS)
            logger.debug("No TOTP prompt shown")
            return
        element, _ = found
        # Computed at submission time so the code is fresh
        code = generate_totp(secret)
        await human_type(page, element, code, wpm=self.config.typing_wpm, enabled=self.config.stealth_enabled)
        await self._submit(page)

    async def _dismiss_interstitials(self, page) -> None:
        for _ in range(3):
            clicked = await click_first(page, INTERSTITIAL_SELECTORS)
            if clicked is None:
                return
            logger.debug(f"Dismissed interstitial: {clicked}")
            await random_delay(800, 1500)

    async def _verify(self, page) -> None:
        try:
            await page.wait_for_url(_is_on_notebooklm, timeout=STEP_TIMEOUT_MS * 2)
        except PlaywrightTimeoutError:
            url = page.url
            if any(marker in url for marker in MANUAL_CHALLENGE_MARKERS) or "challenge" in url:
                raise LoginChallengeError(f"Google requires additional verification ({url.split('?')[0]})") from None
            raise BrowserAutomationError(f"Did not reach NotebookLM after sign-in (at {url.split('?')[0]})") from None
        logger.info("Reached NotebookLM")
