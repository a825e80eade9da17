"""Ask a notebook to describe itself so it can be catalogued."""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import DiscoveryError
from .session import SessionRegistry

logger = logging.getLogger("notebooklm_pool.discovery")

NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+){0,2}$")
MIN_TAGS = 8
MAX_TAGS = 10
MAX_DESCRIPTION_LENGTH = 150

DISCOVERY_PROMPT = """Analyze the sources in this notebook and reply with ONLY a JSON object, no other text:
{
  "name": "1-3 lowercase words joined by dashes, e.g. 'react-hooks-guide'",
  "description": "Two sentences about what the sources cover, at most 150 characters",
  "tags": ["8 to 10 short keywords"]
}"""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class NotebookMetadata:
    name: str
    description: str
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "tags": self.tags}


def is_valid_name(name: Any) -> bool:
    """1-3 lowercase alphanumeric words joined by single dashes."""
    return isinstance(name, str) and bool(NAME_PATTERN.match(name))


def is_valid_tags(tags: Any) -> bool:
    if not isinstance(tags, list) or not (MIN_TAGS <= len(tags) <= MAX_TAGS):
        return False
    return all(isinstance(tag, str) and tag.strip() for tag in tags)


def truncate_description(description: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
    """Cut at the last sentence end that fits, else hard-cut with an ellipsis."""
    description = description.strip()
    if len(description) <= max_length:
        return description
    head = description[:max_length]
    last_period = head.rfind(".")
    if last_period > 0:
        return head[: last_period + 1]
    return description[: max_length - 3] + "..."


def parse_metadata_response(answer: str) -> NotebookMetadata:
    """Parse and validate the notebook's JSON self-description.

    Raises:
        DiscoveryError: The answer is not JSON or fails validation.
    """
    cleaned = _CODE_FENCE.sub("", (answer or "").strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise DiscoveryError(f"Invalid JSON response: {e}") from None
    if not isinstance(data, dict):
        raise DiscoveryError("Invalid JSON response: expected an object")

    missing = [key for key in ("name", "description", "tags") if key not in data]
    if missing:
        raise DiscoveryError(f"Missing required fields: {', '.join(missing)}")

    name = data["name"]
    if not is_valid_name(name):
        raise DiscoveryError(f"Invalid name format: {name!r} (expected 1-3 kebab-case words)")

    tags = data["tags"]
    if not isinstance(tags, list) or not (MIN_TAGS <= len(tags) <= MAX_TAGS):
        count = len(tags) if isinstance(tags, list) else "not a list"
        raise DiscoveryError(f"Invalid tags count: {count} (expected {MIN_TAGS}-{MAX_TAGS})")
    if not is_valid_tags(tags):
        raise DiscoveryError("Invalid tag: every tag must be a non-empty string")

    description = data["description"]
    if not isinstance(description, str) or not description.strip():
        raise DiscoveryError("Invalid description: must be a non-empty string")

    return NotebookMetadata(
        name=name,
        description=truncate_description(description),
        tags=[tag.strip() for tag in tags],
    )


class AutoDiscovery:
    """Runs the discovery prompt in a throwaway session."""

    def __init__(self, registry: SessionRegistry, retry_delay: float = 2.0):
        self.registry = registry
        self.retry_delay = retry_delay

    async def discover_metadata(self, notebook_url: str, max_retries: int = 2) -> NotebookMetadata:
        attempts = max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            session_id = f"auto-discovery-{int(time.time() * 1000)}"
            try:
                session = await self.registry.get_or_create_session(session_id, notebook_url)
                result = await session.ask(DISCOVERY_PROMPT)
                metadata = parse_metadata_response(result.answer)
                logger.info(f"Discovered notebook metadata: {metadata.name}")
                return metadata
            except Exception as e:
                last_error = e
                logger.warning(f"Discovery attempt {attempt}/{attempts} failed: {e}")
            finally:
                await self.registry.close_session(session_id)

            if attempt < attempts and self.retry_delay:
                await asyncio.sleep(self.retry_delay)

        raise DiscoveryError(f"Auto-discovery failed after {attempts} attempt(s): {last_error}") from last_error
