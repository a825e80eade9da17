"""Detect when a streamed NotebookLM answer has finished rendering.

NotebookLM exposes no completion event, so the latest response element is
polled. A reading counts as final once the same candidate text has been
seen on ``required_stable_polls`` consecutive ticks. Placeholders,
question echoes and previously known answers never count.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable

from .constants import (
    PLACEHOLDER_SNIPPETS,
    RESPONSE_CONTAINER_SELECTOR,
    RESPONSE_SELECTORS,
    RESPONSE_TEXT_SELECTOR,
    THINKING_SELECTORS,
)
from .dom import any_visible

logger = logging.getLogger("notebooklm_pool.answers")

_WHITESPACE = re.compile(r"\s+")


class SnapshotKind(str, Enum):
    EMPTY = "empty"
    PLACEHOLDER = "placeholder"
    ECHO = "echo"
    KNOWN = "known"
    CANDIDATE = "candidate"


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().lower()


PLACEHOLDER_MAX_LENGTH = 80


def is_placeholder(text: str) -> bool:
    """Match a "generating/loading" status line. Long texts are never placeholders."""
    lowered = normalize_text(text).rstrip(".\u2026 ")
    if len(lowered) > PLACEHOLDER_MAX_LENGTH:
        return False
    return any(snippet in lowered for snippet in PLACEHOLDER_SNIPPETS)


def classify_snapshot(text: str | None, question: str = "", ignore_texts: Iterable[str] = ()) -> SnapshotKind:
    if not text or not text.strip():
        return SnapshotKind.EMPTY
    normalized = normalize_text(text)
    if is_placeholder(text):
        return SnapshotKind.PLACEHOLDER
    if question and normalized == normalize_text(question):
        return SnapshotKind.ECHO
    if any(normalized == normalize_text(known) for known in ignore_texts if known):
        return SnapshotKind.KNOWN
    return SnapshotKind.CANDIDATE


@dataclass
class StabilityTracker:
    """Counts consecutive identical candidate readings."""
    required: int = 8
    last_text: str | None = None
    stable_count: int = 0

    def observe(self, text: str) -> bool:
        """Record a candidate reading. Returns True once it is stable enough."""
        if text == self.last_text:
            self.stable_count += 1
        else:
            self.last_text = text
            self.stable_count = 1
        return self.stable_count >= self.required


@dataclass
class WaitOptions:
    question: str = ""
    timeout_ms: float = 120_000
    poll_interval_ms: float = 1000
    required_stable_polls: int = 8
    ignore_texts: list[str] = field(default_factory=list)
    debug: bool = False


async def count_response_elements(page) -> int:
    """Count visible response elements for the first selector that matches anything."""
    for selector in RESPONSE_SELECTORS:
        try:
            elements = await page.query_selector_all(selector)
        except Exception:
            continue
        if not elements:
            continue
        count = 0
        for element in elements:
            try:
                if await element.is_visible():
                    count += 1
            except Exception:
                continue
        return count
    return 0


async def snapshot_latest_response(page) -> str | None:
    """Text of the newest response element, or None if there is none."""
    for selector in RESPONSE_SELECTORS:
        try:
            elements = await page.query_selector_all(selector)
            if not elements:
                continue
            text = (await elements[-1].inner_text()).strip()
            if text:
                return text
        except Exception as e:
            logger.debug(f"Snapshot via {selector} failed: {e}")
            continue
    return None


async def snapshot_all_responses(page) -> list[str]:
    """All distinct, non-empty response texts on the page, oldest first."""
    texts: list[str] = []
    try:
        containers = await page.query_selector_all(RESPONSE_CONTAINER_SELECTOR)
    except Exception as e:
        logger.debug(f"Could not list response containers: {e}")
        return texts

    for container in containers:
        try:
            element = await container.query_selector(RESPONSE_TEXT_SELECTOR)
            if element is None:
                continue
            text = (await element.inner_text()).strip()
        except Exception:
            continue
        if text and text not in texts:
            texts.append(text)
    return texts


async def get_latest_response_container(page):
    """Element handle of the newest response container, or None."""
    try:
        containers = await page.query_selector_all(RESPONSE_CONTAINER_SELECTOR)
    except Exception:
        return None
    return containers[-1] if containers else None


async def wait_for_latest_answer(page, options: WaitOptions | None = None, **kwargs) -> str | None:
    """Poll until the latest answer is stable. Returns None on timeout.

    Keyword arguments override fields of ``options``.
    """
    options = replace(options or WaitOptions(), **kwargs)

    tracker = StabilityTracker(required=max(1, options.required_stable_polls))
    deadline = time.monotonic() + options.timeout_ms / 1000
    interval = options.poll_interval_ms / 1000
    ticks = 0

    while time.monotonic() < deadline:
        ticks += 1
        if await any_visible(page, THINKING_SELECTORS):
            if options.debug:
                logger.debug(f"[tick {ticks}] still thinking")
            await asyncio.sleep(interval)
            continue

        text = await snapshot_latest_response(page)
        kind = classify_snapshot(text, options.question, options.ignore_texts)

        if kind == SnapshotKind.CANDIDATE:
            done = tracker.observe(text)
            if options.debug:
                logger.debug(
                    f"[tick {ticks}] candidate ({len(text)} chars), "
                    f"stable {tracker.stable_count}/{tracker.required}"
                )
            if done:
                return text
        elif options.debug:
            logger.debug(f"[tick {ticks}] ignored {kind.value} snapshot")

        await asyncio.sleep(interval)

    logger.warning(f"No stable answer after {options.timeout_ms / 1000:.1f}s")
    return None
