import os
import stat

import pytest

from notebooklm_pool.crypto import (
    AUTH_TAG_LENGTH,
    IV_LENGTH,
    CryptoVault,
    generate_new_key,
    mask_email,
    mask_sensitive,
)
from notebooklm_pool.errors import AuthTagError, EncryptionKeyError, FormatError


@pytest.fixture
def vault(tmp_path, monkeypatch):
    monkeypatch.delenv("NOTEBOOKLM_ENCRYPTION_KEY", raising=False)
    return CryptoVault(tmp_path)


def _flip_hex_char(value: str, index: int) -> str:
    flipped = "0" if value[index] != "0" else "1"
    return value[:index] + flipped + value[index + 1:]


class TestEncryptDecrypt:
    """Authenticated encryption of credential strings."""

    @pytest.mark.parametrize("plaintext", ["", "hunter2", "pässwörd ✓", "x" * 2048])
    def test_round_trip(self, vault, plaintext):
        assert vault.decrypt(vault.encrypt(plaintext)) == plaintext

    def test_format_is_three_hex_parts(self, vault):
        iv, tag, ct = vault.encrypt("secret").split(":")
        assert len(bytes.fromhex(iv)) == IV_LENGTH
        assert len(bytes.fromhex(tag)) == AUTH_TAG_LENGTH
        assert len(bytes.fromhex(ct)) == len("secret")

    def test_same_plaintext_gives_different_ciphertexts(self, vault):
        assert vault.encrypt("secret") != vault.encrypt("secret")

    def test_tampered_ciphertext_fails(self, vault):
        iv, tag, ct = vault.encrypt("secret value").split(":")
        with pytest.raises(AuthTagError):
            vault.decrypt(f"{iv}:{tag}:{_flip_hex_char(ct, 0)}")

    def test_tampered_tag_fails(self, vault):
        iv, tag, ct = vault.encrypt("secret value").split(":")
        with pytest.raises(AuthTagError):
            vault.decrypt(f"{iv}:{_flip_hex_char(tag, len(tag) - 1)}:{ct}")

    def test_wrong_key_fails(self, tmp_path, vault):
        encrypted = vault.encrypt("secret")
        other = CryptoVault(tmp_path / "other", env_key=generate_new_key())
        with pytest.raises(AuthTagError):
            other.decrypt(encrypted)

    @pytest.mark.parametrize(
        "value",
        [
            "not-encrypted",
            "aa:bb",
            "a:b:c:d",
            ":" + "00" * 16 + ":00",
            "zz" * 16 + ":" + "00" * 16 + ":00",
            "00" * 12 + ":" + "00" * 16 + ":00",
            "00" * 16 + ":" + "00" * 8 + ":00",
        ],
    )
    def test_malformed_input_raises_format_error(self, vault, value):
        with pytest.raises(FormatError):
            vault.decrypt(value)

    def test_verify_encryption(self, vault):
        assert vault.verify_encryption() is True


class TestKeyResolution:
    """Key comes from env, then key file, then is generated."""

    def test_generates_owner_only_key_file(self, vault, tmp_path):
        vault.get_key()
        key_file = tmp_path / "encryption.key"
        assert key_file.exists()
        assert len(key_file.read_text().strip()) == 64
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600

    def test_key_file_is_reused(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOTEBOOKLM_ENCRYPTION_KEY", raising=False)
        encrypted = CryptoVault(tmp_path).encrypt("persisted")
        assert CryptoVault(tmp_path).decrypt(encrypted) == "persisted"

    def test_environment_key_wins(self, tmp_path, monkeypatch):
        key = generate_new_key()
        monkeypatch.setenv("NOTEBOOKLM_ENCRYPTION_KEY", key)
        vault = CryptoVault(tmp_path)
        assert vault.get_key() == bytes.fromhex(key)
        assert not (tmp_path / "encryption.key").exists()

    @pytest.mark.parametrize("bad_key", ["abc", "zz" * 32])
    def test_invalid_environment_key(self, tmp_path, bad_key):
        with pytest.raises(EncryptionKeyError):
            CryptoVault(tmp_path, env_key=bad_key).get_key()


class TestMasking:
    def test_mask_email(self):
        assert mask_email("test@gmail.com") == "t**t@gmail.com"
        assert mask_email("ab@x.com") == "**@x.com"

    def test_mask_sensitive(self):
        assert mask_sensitive("password123") == "pa*******23"
        assert mask_sensitive("abcd") == "****"
        assert mask_sensitive("") == ""
        assert mask_sensitive(None) == ""
