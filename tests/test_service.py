import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from notebooklm_pool.accounts import AccountStore
from notebooklm_pool.auth import AuthManager
from notebooklm_pool.config import Config
from notebooklm_pool.constants import SessionStatus, SourceFormat
from notebooklm_pool.crypto import CryptoVault, generate_new_key
from notebooklm_pool.errors import AuthenticationRequiredError, SessionBusyError
from notebooklm_pool.models import AskResult, AutoLoginResult, Citation, CitationExtractionResult
from notebooklm_pool.service import NotebookService

NOTEBOOK = "https://notebooklm.google.com/notebook/abc"


def write_live_state(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"cookies": [{"name": "SID", "expires": -1}], "origins": []}))


def make_registry(auth, ask_result=None):
    session = MagicMock()
    session.session_id = "s1"
    session.ask = AsyncMock(return_value=ask_result or AskResult(answer="The answer."))
    session.get_info.return_value = {"id": "s1", "message_count": 1}

    registry = MagicMock()
    registry.auth_manager = auth
    registry.context_manager = MagicMock()
    registry.context_manager.use_profile = AsyncMock()
    registry.context_manager.close_context = AsyncMock()
    registry.context_manager.get_context_info.return_value = {"exists": False}
    registry.get_or_create_session = AsyncMock(return_value=session)
    registry.close_all_sessions = AsyncMock()
    registry.shutdown = AsyncMock()
    registry.max_sessions = 10
    registry.get_stats.return_value = {"active_sessions": 0}
    registry.busy_session_ids.return_value = []
    return registry, session


@pytest.fixture
def config(tmp_path):
    return Config(data_dir=tmp_path)


@pytest_asyncio.fixture
async def store(tmp_path):
    return AccountStore(tmp_path, vault=CryptoVault(tmp_path, env_key=generate_new_key()))


@pytest.fixture
def login_engine():
    engine = MagicMock()
    engine.perform_auto_login = AsyncMock()
    engine.auto_login_best_account = AsyncMock()
    return engine


class TestAskValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("question,url,fmt", [
        ("", NOTEBOOK, "none"),
        ("Question?", "", "none"),
        ("Question?", "not-a-url", "none"),
        ("Question?", NOTEBOOK, "markdown"),
    ])
    async def test_rejected_before_browser_work(self, config, store, login_engine, question, url, fmt):
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question(question, url, source_format=fmt)

        assert result["status"] == "error"
        assert result["error_type"] == "ValidationError"
        registry.get_or_create_session.assert_not_awaited()


class TestSingleProfileMode:
    @pytest.mark.asyncio
    async def test_requires_saved_login(self, config, store, login_engine):
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK)

        assert result["status"] == "error"
        assert result["error_type"] == "AuthenticationRequiredError"
        login_engine.perform_auto_login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_answer(self, config, store, login_engine):
        auth = AuthManager(config.browser_state_dir)
        write_live_state(auth.state_file)
        registry, session = make_registry(auth)
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK, session_id="s1")

        assert result["status"] == "success"
        assert result["answer"] == "The answer."
        assert result["session_id"] == "s1"
        assert "account_id" not in result
        assert "citations" not in result
        registry.get_or_create_session.assert_awaited_once_with("s1", NOTEBOOK)
        assert session.ask.await_args.args[1] == SourceFormat.NONE

    @pytest.mark.asyncio
    async def test_answer_with_citations(self, config, store, login_engine):
        auth = AuthManager(config.browser_state_dir)
        write_live_state(auth.state_file)
        citations = CitationExtractionResult(
            "A [1]", 'A [1: "src"]', [Citation("[1]", 1, "src")], SourceFormat.INLINE
        )
        registry, _ = make_registry(auth, AskResult(answer="A [1]", citations=citations))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK, source_format="inline")

        assert result["answer"] == 'A [1: "src"]'
        assert result["source_format"] == "inline"
        assert result["citations"][0]["number"] == 1
        assert "citation_error" not in result

    @pytest.mark.asyncio
    async def test_session_errors_become_results(self, config, store, login_engine):
        auth = AuthManager(config.browser_state_dir)
        write_live_state(auth.state_file)
        registry, session = make_registry(auth)
        session.ask.side_effect = RuntimeError("page crashed")
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK)

        assert result == {
            "question": "Question?",
            "notebook_url": NOTEBOOK,
            "status": "error",
            "error": "page crashed",
            "error_type": "RuntimeError",
        }


class TestPooledAccounts:
    @pytest.mark.asyncio
    async def test_switches_account_and_records_usage(self, config, store, login_engine):
        await store.initialize()
        account_id = await store.add_account("user@example.com", "pw")
        write_live_state(store.get_account(account_id).state_file_path)
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK)

        assert result["status"] == "success"
        assert result["account_id"] == account_id
        assert service.current_account_id == account_id
        assert store.get_current_account_id() == account_id
        assert store.get_account(account_id).quota.used == 1
        assert service.auth_manager.state_file == store.get_account(account_id).state_file_path
        login_engine.perform_auto_login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sign_out_marks_session_expired(self, config, store, login_engine):
        await store.initialize()
        account_id = await store.add_account("user@example.com", "pw")
        write_live_state(store.get_account(account_id).state_file_path)
        registry, session = make_registry(AuthManager(config.browser_state_dir))
        session.ask.side_effect = AuthenticationRequiredError("Session was signed out of NotebookLM")
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK)

        assert result["error_type"] == "AuthenticationRequiredError"
        assert store.get_account(account_id).state.session_status == SessionStatus.EXPIRED
        assert store.get_account(account_id).quota.used == 0

    @pytest.mark.asyncio
    async def test_auto_login_when_state_missing(self, config, store, login_engine):
        await store.initialize()
        account_id = await store.add_account("user@example.com", "pw")
        account = store.get_account(account_id)

        async def login(account_id, show_browser=None):
            write_live_state(account.state_file_path)
            return AutoLoginResult(True, account_id)

        login_engine.perform_auto_login.side_effect = login
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK)

        assert result["status"] == "success"
        login_engine.perform_auto_login.assert_awaited_once()
        registry.context_manager.close_context.assert_awaited()

    @pytest.mark.asyncio
    async def test_failed_auto_login(self, config, store, login_engine):
        await store.initialize()
        await store.add_account("user@example.com", "pw")
        login_engine.perform_auto_login.return_value = AutoLoginResult(
            False, "x", error="2FA prompt", requires_manual_intervention=True
        )
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        with pytest.raises(AuthenticationRequiredError, match="manual login required"):
            await service.ensure_authenticated()

    @pytest.mark.asyncio
    async def test_auto_login_disabled(self, config, store, login_engine):
        await store.initialize()
        await store.add_account("user@example.com", "pw")
        await store.set_auto_login_enabled(False)
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.ask_question("Question?", NOTEBOOK)

        assert result["error_type"] == "AuthenticationRequiredError"
        assert "auto-login is disabled" in result["error"]
        login_engine.perform_auto_login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_eligible_account(self, config, store, login_engine):
        await store.initialize()
        account_id = await store.add_account("user@example.com", "pw")
        await store.update_account(account_id, enabled=False)
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        with pytest.raises(AuthenticationRequiredError, match="No eligible account"):
            await service.ensure_authenticated()

    @pytest.mark.asyncio
    async def test_switch_waits_for_busy_sessions(self, config, store, login_engine):
        await store.initialize()
        first = await store.add_account("first@example.com", "pw")
        second = await store.add_account("second@example.com", "pw")
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)
        await service.switch_account(first)
        registry.close_all_sessions.reset_mock()

        registry.busy_session_ids.return_value = ["s1"]
        with pytest.raises(SessionBusyError, match="s1"):
            await service.switch_account(second)
        registry.close_all_sessions.assert_not_awaited()
        assert service.current_account_id == first

        registry.busy_session_ids.return_value = []
        await service.switch_account(second)
        registry.close_all_sessions.assert_awaited_once()
        assert service.current_account_id == second

    @pytest.mark.asyncio
    async def test_switch_to_unknown_account(self, config, store, login_engine):
        await store.initialize()
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)
        with pytest.raises(ValueError, match="Account not found"):
            await service.switch_account("account-missing")


class TestServiceAutoLogin:
    @pytest.mark.asyncio
    async def test_no_eligible_account(self, config, store, login_engine):
        login_engine.auto_login_best_account.return_value = None
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.auto_login()

        assert result == {"status": "error", "error": "No eligible account for auto-login"}

    @pytest.mark.asyncio
    async def test_refused_while_question_in_flight(self, config, store, login_engine):
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        registry.busy_session_ids.return_value = ["s1"]
        service = NotebookService(config, store, registry, login_engine)

        result = await service.auto_login("account-1")

        assert result["status"] == "error"
        assert "s1" in result["error"]
        registry.close_all_sessions.assert_not_awaited()
        login_engine.perform_auto_login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_named_account(self, config, store, login_engine):
        login_engine.perform_auto_login.return_value = AutoLoginResult(True, "account-1", duration=1200.4)
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)

        result = await service.auto_login("account-1", timeout_seconds=30)

        assert result["status"] == "success"
        assert result["duration_ms"] == 1200
        login_engine.perform_auto_login.assert_awaited_once_with(
            "account-1", show_browser=None, timeout_seconds=30
        )


class TestHealth:
    @pytest.mark.asyncio
    async def test_needs_auth(self, config, store, login_engine):
        registry, _ = make_registry(AuthManager(config.browser_state_dir))
        service = NotebookService(config, store, registry, login_engine)
        await service.start()

        health = service.get_health()

        assert health["status"] == "needs_auth"
        assert health["authenticated"] is False
        assert health["accounts"] == 0
        registry.start_cleanup_task.assert_called_once()
