import json
from unittest.mock import AsyncMock

import pytest

from fakes import FakeBrowser, FakeContext
from notebooklm_pool.auth import AuthManager
from notebooklm_pool.browser import (
    SharedContextManager,
    build_launch_options,
    claim_profile,
    is_chrome_profile_locked,
    release_profile,
    session_storage_init_script,
)
from notebooklm_pool.config import Config
from notebooklm_pool.errors import ProfileInUseError


@pytest.fixture
def config(tmp_path):
    return Config(data_dir=tmp_path)


def launcher_for(*browsers):
    return AsyncMock(side_effect=list(browsers))


class TestProfileClaims:
    def test_second_claim_fails(self, tmp_path):
        profile = tmp_path / "profile"
        claim_profile(profile)
        try:
            with pytest.raises(ProfileInUseError):
                claim_profile(profile)
        finally:
            release_profile(profile)
        claim_profile(profile)
        release_profile(profile)

    def test_singleton_lock_detected(self, tmp_path):
        assert not is_chrome_profile_locked(tmp_path)
        (tmp_path / "SingletonLock").symlink_to(tmp_path / "missing-target")
        assert is_chrome_profile_locked(tmp_path)


class TestLaunchOptions:
    def test_stealth_defaults(self, config):
        options = build_launch_options(config, headless=True)
        assert options["headless"] is True
        assert "--disable-blink-features=AutomationControlled" in options["args"]
        assert options["viewport"] == {"width": 1024, "height": 768}
        assert options["ignore_default_args"] == ["--enable-automation"]

    def test_session_storage_script_is_origin_scoped(self):
        script = session_storage_init_script({"token": "abc"})
        assert "notebooklm.google.com" in script
        assert '{"token": "abc"}' in script


class TestSharedContextManager:
    @pytest.mark.asyncio
    async def test_context_reused_and_state_restored(self, tmp_path, config):
        auth = AuthManager(tmp_path / "browser_state")
        auth.browser_state_dir.mkdir(parents=True)
        auth.state_file.write_text(json.dumps({"cookies": [{"name": "SID", "expires": -1}]}))
        auth.session_file.write_text(json.dumps({"k": "v"}))
        browser = FakeBrowser(headless=True)
        manager = SharedContextManager(auth, config, launcher=launcher_for(browser))

        assert manager.get_current_headless_mode() is None
        assert manager.get_context_info()["exists"] is False

        context = await manager.get_or_create_context()
        assert await manager.get_or_create_context() is context
        manager._launch.assert_awaited_once()
        context.add_cookies.assert_awaited_once_with([{"name": "SID", "expires": -1}])
        context.add_init_script.assert_awaited_once()
        assert manager.get_current_headless_mode() is True
        assert manager.get_context_info()["exists"] is True

    @pytest.mark.asyncio
    async def test_headless_change_relaunches(self, tmp_path, config):
        auth = AuthManager(tmp_path / "browser_state")
        first, second = FakeBrowser(headless=True), FakeBrowser(FakeContext(), headless=False)
        manager = SharedContextManager(auth, config, launcher=launcher_for(first, second))

        await manager.get_or_create_context(headless=True)
        context = await manager.get_or_create_context(headless=False)

        first.close.assert_awaited_once()
        assert context is second.context
        assert manager._launch.await_args.args[2] is False

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path, config):
        browser = FakeBrowser()
        manager = SharedContextManager(AuthManager(tmp_path / "s"), config, launcher=launcher_for(browser))
        await manager.get_or_create_context()

        await manager.close_context()
        await manager.close_context()

        browser.close.assert_awaited_once()
        assert manager.get_current_headless_mode() is None

    @pytest.mark.asyncio
    async def test_use_profile_closes_current_context(self, tmp_path, config):
        browser = FakeBrowser()
        manager = SharedContextManager(AuthManager(tmp_path / "s"), config, launcher=launcher_for(browser))
        await manager.get_or_create_context()

        await manager.use_profile(tmp_path / "other-profile")

        browser.close.assert_awaited_once()
        assert manager.profile_dir == tmp_path / "other-profile"
        assert manager.get_context_info()["profile_dir"] == str(tmp_path / "other-profile")
