"""Credential encryption for stored account secrets.

Values are sealed with AES-256-GCM and serialized as ``iv:authTag:ciphertext``
with every component hex-encoded. The key comes from the
``NOTEBOOKLM_ENCRYPTION_KEY`` environment variable, then from
``encryption.key`` in the data directory, and is generated on first use
otherwise.
"""

import logging
import os
import secrets
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import ENCRYPTION_KEY_ENV
from .errors import AuthTagError, EncryptionKeyError, FormatError

logger = logging.getLogger("notebooklm_pool.crypto")

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_FILE_NAME = "encryption.key"


def generate_new_key() -> str:
    """Return a fresh random 256-bit key as 64 hex characters."""
    return secrets.token_hex(KEY_LENGTH)


def _parse_hex_key(value: str, source: str) -> bytes:
    value = value.strip()
    if len(value) != KEY_LENGTH * 2:
        raise EncryptionKeyError(
            f"Encryption key from {source} must be {KEY_LENGTH * 2} hex characters (256 bits)"
        )
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise EncryptionKeyError(f"Encryption key from {source} is not valid hex") from None


def _write_owner_only(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    # O_CREAT mode is ignored when the file already existed
    os.chmod(path, 0o600)


class CryptoVault:
    """Encrypts and decrypts credential strings with a lazily resolved key."""

    def __init__(self, data_dir: Path, env_key: str | None = None):
        """
        Args:
            data_dir: Directory holding ``encryption.key``.
            env_key: Hex key overriding the environment lookup (mainly for tests).
        """
        self.data_dir = Path(data_dir)
        self._env_key = env_key
        self._key: bytes | None = None

    @property
    def key_file(self) -> Path:
        return self.data_dir / KEY_FILE_NAME

    def get_key(self) -> bytes:
        """Resolve the key: environment value, then key file, then a new persisted key."""
        if self._key is not None:
            return self._key

        env_value = self._env_key if self._env_key is not None else os.environ.get(ENCRYPTION_KEY_ENV)
        if env_value:
            self._key = _parse_hex_key(env_value, ENCRYPTION_KEY_ENV)
            logger.debug("Using encryption key from environment")
            return self._key

        if self.key_file.exists():
            self._key = _parse_hex_key(self.key_file.read_text(), str(self.key_file))
            logger.debug(f"Loaded encryption key from {self.key_file}")
            return self._key

        self.data_dir.mkdir(parents=True, exist_ok=True)
        new_key = generate_new_key()
        _write_owner_only(self.key_file, new_key)
        logger.warning(
            f"Generated new encryption key at {self.key_file}. "
            "Back it up: losing this file makes every stored credential unreadable. "
            f"Set {ENCRYPTION_KEY_ENV} to supply the key from the environment instead."
        )
        self._key = bytes.fromhex(new_key)
        return self._key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string into ``iv:authTag:ciphertext`` hex form."""
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self.get_key()).encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, data: str) -> str:
        """Decrypt a value produced by :meth:`encrypt`.

        Raises:
            FormatError: The value is not three hex parts with the right lengths.
            AuthTagError: The ciphertext or tag was modified, or the key differs.
        """
        if not isinstance(data, str):
            raise FormatError("Encrypted value must be a string")

        parts = data.split(":")
        if len(parts) != 3:
            raise FormatError(
                f"Invalid encrypted format: expected iv:authTag:ciphertext, got {len(parts)} part(s)"
            )
        iv_hex, tag_hex, ct_hex = parts
        if not iv_hex or not tag_hex:
            raise FormatError("Invalid encrypted format: IV and auth tag are required")

        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except ValueError:
            raise FormatError("Invalid encrypted format: components must be hex-encoded") from None

        if len(iv) != IV_LENGTH:
            raise FormatError(f"Invalid IV length: expected {IV_LENGTH} bytes, got {len(iv)}")
        if len(tag) != AUTH_TAG_LENGTH:
            raise FormatError(
                f"Invalid auth tag length: expected {AUTH_TAG_LENGTH} bytes, got {len(tag)}"
            )

        try:
            plaintext = AESGCM(self.get_key()).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise AuthTagError("Decryption failed: data was tampered with or the key is wrong") from None
        return plaintext.decode("utf-8")

    def verify_encryption(self) -> bool:
        """Round-trip a probe value to confirm the key works."""
        probe = f"verify-{secrets.token_hex(8)}"
        try:
            return self.decrypt(self.encrypt(probe)) == probe
        except (AuthTagError, FormatError, EncryptionKeyError) as e:
            logger.error(f"Encryption self-test failed: {e}")
            return False


def mask_sensitive(value: str | None) -> str:
    """Mask a secret for logging, keeping two characters at each end."""
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"


def mask_email(email: str | None) -> str:
    """Mask an e-mail address for logging: ``test@gmail.com`` -> ``t**t@gmail.com``.

    Only for display. Never compare masked values.
    """
    if not email or "@" not in email:
        return mask_sensitive(email)
    name, domain = email.split("@", 1)
    if len(name) <= 2:
        return f"{'*' * len(name)}@{domain}"
    return f"{name[0]}{'*' * (len(name) - 2)}{name[-1]}@{domain}"
