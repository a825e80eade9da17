"""Citation extraction for NotebookLM answers.

NotebookLM renders sources as numbered markers ("[3]" or a bare
superscript "3") whose excerpt only shows up in a hover tooltip. The
extractor finds the markers, hovers each one to read the excerpt, and
rewrites the answer in the requested format.
"""

import logging
import re
from dataclasses import dataclass

from .constants import (
    CITATION_SELECTORS,
    EXPANDED_EXCERPT_LENGTH,
    INLINE_EXCERPT_LENGTH,
    SOURCE_FORMATS,
    TOOLTIP_SELECTORS,
    SourceFormat,
)
from .models import Citation, CitationExtractionResult
from .stealth import random_delay

logger = logging.getLogger("notebooklm_pool.citations")

MARKER_TEXT_PATTERN = re.compile(r"\[?(\d+)\]?")
BRACKETED_PATTERN = re.compile(r"\[(\d+)\]")


@dataclass
class CitationElement:
    element: object
    marker: str
    number: int


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _marker_strategies(number: int) -> list[str]:
    return [
        f'a:has-text("[{number}]")',
        f'button:has-text("[{number}]")',
        f'span:has-text("[{number}]")',
        f'[data-citation="{number}"]',
        f'[data-citation-id="{number}"]',
        f'[aria-label*="{number}"]',
        f'[role="button"]:has-text("[{number}]")',
        f'[role="link"]:has-text("[{number}]")',
    ]


async def _find_by_selectors(scope) -> list[CitationElement]:
    results: list[CitationElement] = []
    seen: set[int] = set()
    for selector in CITATION_SELECTORS:
        try:
            elements = await scope.query_selector_all(selector)
        except Exception:
            continue
        for element in elements:
            try:
                text = await element.inner_text()
            except Exception:
                continue
            match = MARKER_TEXT_PATTERN.search(text or "")
            if not match:
                continue
            number = int(match.group(1))
            if number in seen:
                continue
            seen.add(number)
            results.append(CitationElement(element, f"[{number}]", number))
    return results


async def _find_by_regex(page, container) -> list[CitationElement]:
    """Fallback: scan the visible text for [n] and locate an element per number."""
    if container is not None:
        text = await container.inner_text()
    else:
        text = await page.inner_text("body")

    numbers = sorted({int(n) for n in BRACKETED_PATTERN.findall(text or "")})
    if not numbers:
        return []

    scope = container or page
    results = []
    for number in numbers:
        element = None
        for selector in _marker_strategies(number):
            try:
                candidate = await scope.query_selector(selector)
                if candidate is not None and await candidate.is_visible():
                    element = candidate
                    break
            except Exception:
                continue

        if element is None:
            try:
                element = await page.query_selector(f"xpath=//*[contains(text(), '[{number}]')]")
            except Exception as e:
                logger.debug(f"XPath lookup for [{number}] failed: {e}")

        if element is None:
            logger.debug(f"No element found for citation [{number}]")
            continue
        results.append(CitationElement(element, f"[{number}]", number))
    return results


async def find_citation_elements(page, container) -> list[CitationElement]:
    """Locate citation markers, de-duplicated by number and sorted ascending."""
    results = await _find_by_selectors(container or page)
    if not results:
        results = await _find_by_regex(page, container)
    results.sort(key=lambda c: c.number)
    return results


async def read_source_name(element) -> str | None:
    """Read a document name from an ``aria-label`` of the form ``"<n>: <name>"``."""
    try:
        label = await element.get_attribute("aria-label")
    except Exception:
        return None
    if not label or ": " not in label:
        return None
    name = label.split(": ", 1)[1].strip()
    return name or None


async def extract_source_via_hover(page, element) -> str | None:
    """Hover a marker and read the tooltip text. The pointer is always moved away afterwards."""
    try:
        try:
            await element.scroll_into_view_if_needed()
        except Exception:
            pass
        await random_delay(100, 200)
        await element.hover()
        await random_delay(300, 500)

        for selector in TOOLTIP_SELECTORS:
            try:
                tooltip = await page.query_selector(selector)
                if tooltip is not None and await tooltip.is_visible():
                    text = (await tooltip.inner_text()).strip()
                    if text:
                        return text
            except Exception:
                continue

        described_by = await element.get_attribute("aria-describedby")
        if described_by:
            tooltip = await page.query_selector(f"#{described_by}")
            if tooltip is not None:
                text = (await tooltip.inner_text()).strip()
                if text:
                    return text
        return None
    finally:
        try:
            await page.mouse.move(0, 0)
        except Exception as e:
            logger.debug(f"Could not move pointer away: {e}")


def _replace_marker(text: str, number: int, replacement: str) -> str:
    bracketed = f"[{number}]"
    if bracketed in text:
        return text.replace(bracketed, replacement)
    # Superscript form: digits glued to the preceding word, e.g. "Fact1" or "Fact10."
    # Best effort; a number in ordinary prose followed by punctuation also matches.
    # A digit right after "[" belongs to an inline replacement already written.
    pattern = re.compile(rf"([^\d\[])({number})(?=[,.;:\s]|\d|$)")
    return pattern.sub(lambda m: m.group(1) + replacement, text)


def format_answer_with_sources(answer: str, citations: list[Citation], fmt: str | SourceFormat) -> str:
    """Rewrite ``answer`` for the given format. Citations are applied highest number first."""
    fmt = SOURCE_FORMATS.get(fmt)
    if fmt in (SourceFormat.NONE, SourceFormat.JSON) or not citations:
        return answer

    if fmt == SourceFormat.FOOTNOTES:
        lines = []
        for c in citations:
            name = f"{c.source_name}: " if c.source_name else ""
            lines.append(f"{c.marker} {name}{c.source_text}")
        return f"{answer}\n\n---\n**Sources:**\n" + "\n\n".join(lines)

    result = answer
    for c in sorted(citations, key=lambda c: c.number, reverse=True):
        if fmt == SourceFormat.INLINE:
            replacement = f'[{c.number}: "{truncate(c.source_text, INLINE_EXCERPT_LENGTH)}"]'
        else:
            replacement = f'"{truncate(c.source_text, EXPANDED_EXCERPT_LENGTH)}"'
        result = _replace_marker(result, c.number, replacement)
    return result


async def extract_citations(
    page,
    answer_text: str,
    response_container=None,
    fmt: str | SourceFormat = SourceFormat.NONE,
) -> CitationExtractionResult:
    """Extract citations from the latest answer and format it.

    Markers that cannot be read are skipped. ``success`` is False only when
    the extraction as a whole breaks, in which case the answer is returned
    unmodified.
    """
    fmt = SOURCE_FORMATS.get(fmt)
    if fmt == SourceFormat.NONE:
        return CitationExtractionResult(answer_text, answer_text, [], fmt, True)

    logger.info(f"Extracting citations (format: {fmt.value})")
    try:
        markers = await find_citation_elements(page, response_container)
        if not markers:
            logger.info("No citation markers found in response")
            return CitationExtractionResult(answer_text, answer_text, [], fmt, True)

        citations: list[Citation] = []
        for found in markers:
            try:
                source_name = await read_source_name(found.element)
                source_text = await extract_source_via_hover(page, found.element)
                if source_text:
                    citations.append(Citation(found.marker, found.number, source_text, source_name))
                else:
                    logger.warning(f"{found.marker} hover produced no source text")
            except Exception as e:
                logger.warning(f"{found.marker} extraction failed: {e}")
            await random_delay(100, 200)

        logger.info(f"Extracted {len(citations)}/{len(markers)} citations")
        formatted = format_answer_with_sources(answer_text, citations, fmt)
        return CitationExtractionResult(answer_text, formatted, citations, fmt, True)
    except Exception as e:
        logger.error(f"Citation extraction failed: {e}")
        return CitationExtractionResult(answer_text, answer_text, [], fmt, False, str(e))
