import asyncio
import json
from datetime import timedelta

import pytest
import pytest_asyncio

from notebooklm_pool.accounts import AccountStore
from notebooklm_pool.constants import RotationStrategy, SessionStatus
from notebooklm_pool.crypto import CryptoVault, generate_new_key
from notebooklm_pool.errors import NotInitializedError, ValidationError
from notebooklm_pool.models import isoformat, utc_now


@pytest.fixture
def vault(tmp_path):
    return CryptoVault(tmp_path, env_key=generate_new_key())


@pytest_asyncio.fixture
async def store(tmp_path, vault):
    store = AccountStore(tmp_path, vault=vault)
    await store.initialize()
    return store


def _write_live_state(account):
    account.state_file_path.parent.mkdir(parents=True, exist_ok=True)
    account.state_file_path.write_text(json.dumps({
        "cookies": [{"name": "SID", "domain": ".google.com", "value": "x", "expires": -1}]
    }))


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_default_config(self, tmp_path, vault):
        store = AccountStore(tmp_path, vault=vault)
        await store.initialize()

        data = json.loads((tmp_path / "accounts.json").read_text())
        assert data["accounts"] == []
        assert data["rotationStrategy"] == "least_used"
        assert data["autoLoginEnabled"] is True
        assert (tmp_path / "accounts").is_dir()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store):
        await store.add_account("a@x.com", "pw")
        await store.initialize()
        assert len(store.list_accounts()) == 1

    @pytest.mark.asyncio
    async def test_add_before_initialize_raises(self, tmp_path, vault):
        store = AccountStore(tmp_path, vault=vault)
        with pytest.raises(NotInitializedError):
            await store.add_account("a@x.com", "pw")

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, tmp_path, vault, store):
        account_id = await store.add_account("a@x.com", "pw", priority=3, notes="main")
        await store.record_usage(account_id)

        reloaded = AccountStore(tmp_path, vault=vault)
        await reloaded.initialize()
        account = reloaded.get_account(account_id)
        assert account.email == "a@x.com"
        assert account.config.priority == 3
        assert account.config.notes == "main"
        assert account.quota.used == 1


class TestAddRemove:
    @pytest.mark.asyncio
    async def test_add_account_persists_encrypted_credentials(self, store, tmp_path):
        account_id = await store.add_account("a@x.com", "secret-pw", "JBSW Y3DP")

        assert account_id.startswith("account-")
        account = store.get_account(account_id)
        assert account.config.has_credentials
        assert account.config.has_totp
        assert account.profile_dir.is_dir()

        raw = (tmp_path / "accounts" / account_id / "credentials.json").read_text()
        assert "secret-pw" not in raw
        assert set(json.loads(raw)) == {
            "emailEncrypted", "passwordEncrypted", "totpSecretEncrypted", "encryptedAt"
        }

    @pytest.mark.asyncio
    async def test_get_credentials_decrypts(self, store):
        account_id = await store.add_account("a@x.com", "secret-pw", "JBSW Y3DP")
        credentials = await store.get_credentials(account_id)
        assert credentials.email == "a@x.com"
        assert credentials.password == "secret-pw"
        assert credentials.totp_secret == "JBSWY3DP"
        assert "secret-pw" not in repr(credentials)

    @pytest.mark.asyncio
    async def test_get_credentials_unknown_account(self, store):
        assert await store.get_credentials("account-0") is None

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store):
        first = await store.add_account("a@x.com", "pw")
        second = await store.add_account("b@x.com", "pw")
        assert first != second

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [("", "pw"), ("not-an-email", "pw"), ("a@x.com", "")])
    async def test_add_account_validation(self, store, email, password):
        with pytest.raises(ValidationError):
            await store.add_account(email, password)

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, store):
        await store.add_account("a@x.com", "pw")
        with pytest.raises(ValidationError):
            await store.add_account("A@x.com", "pw")

    @pytest.mark.asyncio
    async def test_remove_account(self, store, tmp_path):
        account_id = await store.add_account("a@x.com", "pw")
        assert await store.remove_account(account_id) is True
        assert store.get_account(account_id) is None
        assert not (tmp_path / "accounts" / account_id).exists()

    @pytest.mark.asyncio
    async def test_remove_unknown_account(self, store):
        assert await store.remove_account("account-0") is False

    @pytest.mark.asyncio
    async def test_update_account(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        account = await store.update_account(account_id, enabled=False, priority=7, quota_limit=5)
        assert account.config.enabled is False
        assert account.config.priority == 7
        assert account.quota.limit == 5

    @pytest.mark.asyncio
    async def test_default_quota_limit(self, tmp_path, vault):
        store = AccountStore(tmp_path, vault=vault, default_quota_limit=20)
        await store.initialize()
        account_id = await store.add_account("a@x.com", "pw")
        assert store.get_account(account_id).quota.limit == 20


class TestStateTransitions:
    """Login success/failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_failure_then_success(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        account = store.get_account(account_id)

        await store.record_login_failure(account_id, "bad password")
        assert account.state.consecutive_failures == 1
        assert account.state.login_failures == 1
        assert account.state.session_status == SessionStatus.EXPIRED
        assert account.state.last_error == "bad password"

        await store.record_login_failure(account_id, "bad password")
        assert account.state.consecutive_failures == 2

        await store.record_login_success(account_id)
        assert account.state.consecutive_failures == 0
        assert account.state.login_failures == 2
        assert account.state.last_error is None
        assert account.state.session_status == SessionStatus.VALID

    @pytest.mark.asyncio
    async def test_record_usage_increments(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        await store.record_usage(account_id)
        await store.record_usage(account_id)
        account = store.get_account(account_id)
        assert account.quota.used == 2
        assert account.state.last_activity is not None

    @pytest.mark.asyncio
    async def test_quota_resets_after_reset_time(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        account = store.get_account(account_id)
        account.quota.used = 50
        account.quota.reset_at = isoformat(utc_now() - timedelta(minutes=1))

        selection = await store.get_best_account()
        assert selection.account.id == account_id
        assert account.quota.used == 0

    @pytest.mark.asyncio
    async def test_quota_reset_waits_for_account_lock(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        account = store.get_account(account_id)
        account.quota.used = 50
        account.quota.reset_at = isoformat(utc_now() - timedelta(minutes=1))

        async with store._lock_for(account_id):
            pending = asyncio.ensure_future(store.get_best_account())
            await asyncio.sleep(0)
            assert account.quota.used == 50

        await pending
        assert account.quota.used == 0


class TestBestAccount:
    @pytest.mark.asyncio
    async def test_single_account_least_used(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        selection = await store.get_best_account()
        assert selection.account.id == account_id
        assert "least used" in selection.reason.lower()

    @pytest.mark.asyncio
    async def test_picks_less_used_account(self, store):
        first = await store.add_account("a@x.com", "pw")
        second = await store.add_account("b@x.com", "pw")
        await store.record_usage(first)
        await store.record_usage(first)

        selection = await store.get_best_account()
        assert selection.account.id == second

    @pytest.mark.asyncio
    async def test_no_accounts(self, store):
        assert await store.get_best_account() is None

    @pytest.mark.asyncio
    async def test_failing_account_skipped(self, store):
        first = await store.add_account("a@x.com", "pw")
        second = await store.add_account("b@x.com", "pw")
        await store.record_usage(second)
        for _ in range(3):
            await store.record_login_failure(first, "nope")

        selection = await store.get_best_account()
        assert selection.account.id == second

    @pytest.mark.asyncio
    async def test_rotation_strategy_persisted(self, tmp_path, vault, store):
        applied = await store.set_rotation_strategy("round-robin")
        assert applied == RotationStrategy.ROUND_ROBIN

        reloaded = AccountStore(tmp_path, vault=vault)
        await reloaded.initialize()
        assert reloaded.get_rotation_strategy() == RotationStrategy.ROUND_ROBIN

    @pytest.mark.asyncio
    async def test_unknown_rotation_strategy(self, store):
        with pytest.raises(ValueError):
            await store.set_rotation_strategy("fastest")

    @pytest.mark.asyncio
    async def test_auto_login_toggle_and_current_account(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        await store.set_auto_login_enabled(False)
        await store.save_current_account_id(account_id)
        assert store.is_auto_login_enabled() is False
        assert store.get_current_account_id() == account_id

        await store.remove_account(account_id)
        assert store.get_current_account_id() is None


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_new_account_needs_login(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        [entry] = await store.health_check()
        assert entry.account_id == account_id
        assert entry.email == "*@x.com"
        assert "No state file (needs login)" in entry.issues
        assert entry.session_valid is False

    @pytest.mark.asyncio
    async def test_quota_exhausted_flagged(self, store):
        account_id = await store.add_account("a@x.com", "pw", quota_limit=1)
        await store.record_usage(account_id)
        [entry] = await store.health_check()
        assert "Quota exhausted" in entry.issues
        assert entry.quota_percent == 100.0

    @pytest.mark.asyncio
    async def test_healthy_account(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        _write_live_state(store.get_account(account_id))
        [entry] = await store.health_check()
        assert entry.issues == []
        assert entry.session_valid is True

    @pytest.mark.asyncio
    async def test_repeated_failures_flagged(self, store):
        account_id = await store.add_account("a@x.com", "pw")
        for _ in range(3):
            await store.record_login_failure(account_id, "challenge")
        [entry] = await store.health_check()
        assert any("3 consecutive login failures" in issue for issue in entry.issues)
