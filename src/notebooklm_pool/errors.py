"""Exception types raised by the NotebookLM account pool.

Crypto and account-store errors propagate to callers unchanged. Browser
automation errors are usually caught by the login engine or the citation
extractor and turned into failure flags on their results.
"""


class NotebookPoolError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(NotebookPoolError, ValueError):
    """Malformed caller input (bad URL, missing required field)."""


class NotInitializedError(NotebookPoolError, RuntimeError):
    """An operation that requires ``initialize()`` was called before it."""


class VaultError(NotebookPoolError):
    """Problem with encrypted data or the encryption key."""


class FormatError(VaultError, ValueError):
    """Encrypted payload is not in ``iv:authTag:ciphertext`` hex form."""


class AuthTagError(VaultError):
    """Authenticated decryption failed: the data was tampered with or the key is wrong."""


class EncryptionKeyError(VaultError, ValueError):
    """The configured encryption key is not 64 hex characters."""


class BrowserAutomationError(NotebookPoolError):
    """A browser step could not be completed."""


class SelectorNotFoundError(BrowserAutomationError):
    """None of the candidate selectors matched within the wait budget."""

    def __init__(self, step: str, selectors: list[str] | tuple[str, ...]):
        self.step = step
        self.selectors = list(selectors)
        super().__init__(
            f"No element found for step '{step}' (tried {len(self.selectors)} selectors)"
        )


class ProfileInUseError(BrowserAutomationError):
    """A browser profile directory is already held by another owner."""


class LoginChallengeError(BrowserAutomationError):
    """Google asked for a verification step that cannot be automated."""


class AuthenticationRequiredError(NotebookPoolError):
    """No valid browser state exists and automatic login did not produce one."""


class SessionBusyError(NotebookPoolError):
    """A question is already in flight on this session."""


class DiscoveryError(NotebookPoolError):
    """Notebook metadata discovery failed after all retries."""
