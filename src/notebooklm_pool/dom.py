"""Generic "first match wins" element resolution.

NotebookLM and the Google sign-in pages change their markup frequently,
so every lookup is an ordered list of candidate selectors. This module
is the only place that walks those lists.
"""

import asyncio
import logging
import time
from typing import Sequence

from .errors import SelectorNotFoundError

logger = logging.getLogger("notebooklm_pool.dom")


async def _usable(element, require_visible: bool, require_enabled: bool) -> bool:
    if require_visible and not await element.is_visible():
        return False
    if require_enabled and not await element.is_enabled():
        return False
    return True


async def resolve_first(
    scope,
    selectors: Sequence[str],
    *,
    timeout_ms: float = 0,
    poll_interval_ms: float = 250,
    require_visible: bool = True,
    require_enabled: bool = False,
):
    """Return ``(element, selector)`` for the first candidate that matches, or None.

    Candidates are tried in order on every round; rounds repeat until
    ``timeout_ms`` elapses (a single round when it is 0). Errors from an
    individual query are treated as "no match" for that selector.

    Args:
        scope: A Playwright ``Page``, ``Frame`` or ``ElementHandle``.
        selectors: Ordered candidate selectors.
    """
    deadline = time.monotonic() + timeout_ms / 1000
    while True:
        for selector in selectors:
            try:
                element = await scope.query_selector(selector)
                if element is not None and await _usable(element, require_visible, require_enabled):
                    logger.debug(f"Matched selector: {selector}")
                    return element, selector
            except Exception as e:
                logger.debug(f"Selector {selector} failed: {e}")
                continue
        if time.monotonic() >= deadline:
            return None
        await asyncio.sleep(poll_interval_ms / 1000)


async def require_first(step: str, scope, selectors: Sequence[str], **kwargs):
    """Like :func:`resolve_first` but raise ``SelectorNotFoundError`` when nothing matches."""
    found = await resolve_first(scope, selectors, **kwargs)
    if found is None:
        raise SelectorNotFoundError(step, selectors)
    return found


async def click_first(scope, selectors: Sequence[str], **kwargs) -> str | None:
    """Click the first usable candidate. Returns the matched selector or None."""
    found = await resolve_first(scope, selectors, **kwargs)
    if found is None:
        return None
    element, selector = found
    await element.click()
    return selector


async def any_visible(scope, selectors: Sequence[str]) -> bool:
    return await resolve_first(scope, selectors) is not None
