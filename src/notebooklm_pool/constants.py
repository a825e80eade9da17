"""
Constants, option mappings and DOM selector lists for NotebookLM automation.

This module is the single source of truth for option names accepted from
callers and for the ordered selector candidates used to drive the
NotebookLM and Google sign-in pages. The UI changes often, so every
lookup is expressed as a list that is tried in order.
"""

from enum import Enum
from typing import Generic, TypeVar

E = TypeVar("E", bound=Enum)


class OptionMapper(Generic[E]):
    """
    Case-insensitive mapping from option names to enum members.

    Produces human-readable error messages listing the valid options.
    """

    def __init__(self, enum_cls: type[E]):
        self._enum_cls = enum_cls
        self._by_name: dict[str, E] = {}
        for member in enum_cls:
            self._by_name[member.value.lower()] = member
            # Accept dashed spellings too ("least-used")
            self._by_name[member.value.lower().replace("_", "-")] = member
        self._display_names = sorted(member.value for member in enum_cls)

    def get(self, name: "str | E") -> E:
        """
        Resolve an option name to its enum member.

        Args:
            name: The option name (case-insensitive) or an enum member.

        Returns:
            The matching enum member.

        Raises:
            ValueError: If the name is empty or unknown.
        """
        if isinstance(name, self._enum_cls):
            return name
        if not name:
            raise ValueError(f"Invalid option: '{name}'. Must be one of: {self.options_str}")

        member = self._by_name.get(str(name).strip().lower())
        if member is None:
            raise ValueError(f"Unknown option '{name}'. Must be one of: {self.options_str}")
        return member

    def is_valid(self, name: str) -> bool:
        return bool(name) and str(name).strip().lower() in self._by_name

    @property
    def options_str(self) -> str:
        """Return comma-separated list of valid options."""
        return ", ".join(self._display_names)

    @property
    def names(self) -> list[str]:
        """Return list of valid option names."""
        return self._display_names


# =============================================================================
# Enumerations
# =============================================================================
class RotationStrategy(str, Enum):
    LEAST_USED = "least_used"
    ROUND_ROBIN = "round_robin"
    FAILOVER = "failover"
    RANDOM = "random"


class SessionStatus(str, Enum):
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class SourceFormat(str, Enum):
    NONE = "none"
    INLINE = "inline"
    FOOTNOTES = "footnotes"
    JSON = "json"
    EXPANDED = "expanded"


ROTATION_STRATEGIES = OptionMapper(RotationStrategy)
SOURCE_FORMATS = OptionMapper(SourceFormat)


# =============================================================================
# URLs
# =============================================================================
NOTEBOOKLM_URL = "https://notebooklm.google.com/"
NOTEBOOKLM_HOST = "notebooklm.google.com"
GOOGLE_ACCOUNTS_HOST = "accounts.google.com"


# =============================================================================
# Accounts and rotation
# =============================================================================
DEFAULT_DAILY_QUOTA = 50
MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_KEEP_ALIVE_HOURS = 24


# =============================================================================
# Authentication cookies
# =============================================================================
# A persisted state counts as authenticated while at least one of these is live
AUTH_COOKIE_NAMES = ["SID", "HSID", "SSID", "__Secure-1PSID", "__Secure-3PSID"]


# =============================================================================
# Browser launch
# =============================================================================
STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_LOCALE = "en-US"


# =============================================================================
# Google sign-in
# =============================================================================
EMAIL_SELECTORS = [
    "input#identifierId",
    "input[name='identifier']",
    "input[type='email']",
]

PASSWORD_SELECTORS = [
    "input[name='Passwd']",
    "input[type='password']",
]

TOTP_SELECTORS = [
    "input[name='totpPin']",
    "input[type='tel']",
    "input[autocomplete='one-time-code']",
]

NEXT_BUTTON_SELECTORS = [
    "#identifierNext",
    "#passwordNext",
    "#totpNext",
    "button:has-text('Next')",
]

INTERSTITIAL_SELECTORS = [
    "button:has-text('Not now')",
    "button:has-text('Skip')",
    "button:has-text('Done')",
    "button:has-text('Reject all')",
]

# URL fragments meaning Google wants something we cannot automate
MANUAL_CHALLENGE_MARKERS = ["/challenge/recaptcha", "/challenge/ipp", "/challenge/dp", "/signin/rejected"]


# =============================================================================
# NotebookLM chat page
# =============================================================================
QUERY_INPUT_SELECTORS = [
    "textarea.query-box-input",
    "textarea[aria-label='Query box']",
    "textarea[aria-label='Input for queries']",
    "textarea[placeholder*='Start typing']",
]

RESPONSE_CONTAINER_SELECTOR = ".to-user-container"
RESPONSE_TEXT_SELECTOR = ".message-text-content"

RESPONSE_SELECTORS = [
    ".to-user-container .message-text-content",
    "[data-message-author='bot']",
    "[data-message-author='assistant']",
    "[data-message-role='assistant']",
    "[data-author='assistant']",
    "[data-renderer*='assistant']",
    "[data-automation-id='response-text']",
    "[data-automation-id='assistant-response']",
    "[data-automation-id='chat-response']",
    "[data-testid*='assistant']",
    "[data-testid*='response']",
    "[aria-live='polite']",
    "[role='listitem'][data-message-author]",
]

THINKING_SELECTORS = [
    "div.thinking-message",
]

# Lower-cased snippets shown while an answer is still being generated
PLACEHOLDER_SNIPPETS = [
    "antwort wird erstellt",
    "answer wird erstellt",
    "answer is being created",
    "answer is being generated",
    "creating answer",
    "generating answer",
    "wird erstellt",
    "getting the context",
    "loading",
    "please wait",
    "réponse en cours",
    "generando respuesta",
]


# =============================================================================
# Citations
# =============================================================================
CITATION_SELECTORS = [
    # Citation links/buttons
    ".citation-link",
    ".citation-marker",
    "[data-citation]",
    "[data-citation-id]",
    "[data-source-id]",
    # Superscript numbers
    "sup.citation",
    "sup[data-citation]",
    "sup a",
    # Bracketed references
    ".reference-marker",
    "[role='button'][aria-label*='citation']",
    "[role='button'][aria-label*='source']",
    ".source-citation",
    ".inline-citation",
    "button.citation",
    "[class*='citation']",
    "[class*='source-ref']",
]

TOOLTIP_SELECTORS = [
    "[role='tooltip']",
    ".tooltip",
    ".popover",
    ".citation-tooltip",
    ".citation-popover",
    ".source-preview",
    ".source-tooltip",
    # Material / Google patterns
    ".mdc-tooltip",
    ".mat-tooltip",
    "[class*='tooltip']",
    "[class*='popover']",
    ".citation-preview",
    ".source-card",
    ".source-snippet",
    "[data-tooltip]",
]

INLINE_EXCERPT_LENGTH = 100
EXPANDED_EXCERPT_LENGTH = 150
