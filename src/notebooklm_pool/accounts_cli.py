#!/usr/bin/env python3
"""CLI tool to manage the NotebookLM account pool.

Accounts, their encrypted credentials and their browser profiles live under
``~/.notebooklm-pool`` (override with NOTEBOOKLM_DATA_DIR).

Usage:
    notebooklm-pool-accounts add you@gmail.com --totp-secret JBSWY3DPEHPK3PXP
    notebooklm-pool-accounts list
    notebooklm-pool-accounts login account-1700000000000
    notebooklm-pool-accounts login account-1700000000000 --manual
    notebooklm-pool-accounts strategy round_robin
"""

import argparse
import asyncio
import getpass
import json
import os
import sys
import time

from .accounts import AccountStore
from .auth import AuthManager, check_if_logged_in_by_url
from .browser import launch_persistent
from .config import ENCRYPTION_KEY_ENV, Config
from .constants import NOTEBOOKLM_URL, ROTATION_STRATEGIES
from .crypto import CryptoVault, mask_email
from .errors import NotebookPoolError
from .login import AutoLoginEngine


def _open_store(config: Config) -> AccountStore:
    return AccountStore(config.data_dir, default_quota_limit=config.default_quota_limit)


async def cmd_add(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()

    password = args.password
    if not password:
        try:
            password = getpass.getpass(f"Password for {args.email}: ")
        except (EOFError, KeyboardInterrupt):
            print("\nCancelled.")
            return 1

    account_id = await store.add_account(
        args.email,
        password,
        args.totp_secret,
        priority=args.priority,
        notes=args.notes,
        quota_limit=args.quota,
    )
    print(f"Added {mask_email(args.email)} as {account_id}")
    print(f"Log it in with: notebooklm-pool-accounts login {account_id}")
    return 0


async def cmd_list(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()
    accounts = store.list_accounts()

    if args.json:
        print(json.dumps([a.to_summary() for a in accounts], indent=2))
        return 0

    if not accounts:
        print("No accounts configured. Add one with: notebooklm-pool-accounts add <email>")
        return 0

    print(f"Rotation strategy: {store.get_rotation_strategy().value}")
    print(f"Auto-login: {'on' if store.is_auto_login_enabled() else 'off'}")
    print()
    current = store.get_current_account_id()
    for account in accounts:
        marker = "*" if account.id == current else " "
        status = "enabled" if account.config.enabled else "disabled"
        print(
            f"{marker} {account.id}  {mask_email(account.email):<28} "
            f"priority={account.config.priority}  "
            f"quota={account.quota.used}/{account.quota.limit}  "
            f"session={account.state.session_status.value}  {status}"
        )
    return 0


async def cmd_remove(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()
    account = store.get_account(args.account_id)
    if account is None:
        print(f"ERROR: Account not found: {args.account_id}")
        return 1

    if not args.yes:
        answer = input(f"Remove {mask_email(account.email)} and its browser profile? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("Cancelled.")
            return 1

    await store.remove_account(args.account_id)
    print(f"Removed {args.account_id}")
    return 0


async def cmd_health(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()
    report = await store.health_check()

    if args.json:
        print(json.dumps([entry.to_dict() for entry in report], indent=2))
        return 0

    if not report:
        print("No accounts configured.")
        return 0

    unhealthy = 0
    for entry in report:
        if entry.issues:
            unhealthy += 1
            print(f"✗ {entry.account_id} ({entry.email})")
            for issue in entry.issues:
                print(f"    - {issue}")
        else:
            print(f"✓ {entry.account_id} ({entry.email}) quota {entry.quota_percent:.0f}% used")
    print()
    print(f"{len(report) - unhealthy}/{len(report)} accounts healthy")
    return 0 if unhealthy == 0 else 1


async def run_manual_login(store: AccountStore, account_id: str, config: Config, timeout: int = 300) -> bool:
    """Open a visible browser on the account's profile and wait for the user to sign in."""
    account = store.get_account(account_id)
    if account is None:
        print(f"ERROR: Account not found: {account_id}")
        return False

    print(f"Opening Chrome for {mask_email(account.email)}...")
    print("Sign in to Google in the browser window. This window closes automatically afterwards.")
    browser = await launch_persistent(account.profile_dir, config, headless=False)
    try:
        page = browser.context.pages[0] if browser.context.pages else await browser.context.new_page()
        await page.goto(NOTEBOOKLM_URL, wait_until="domcontentloaded")

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if check_if_logged_in_by_url(page.url):
                break
            await asyncio.sleep(2)
        else:
            print(f"ERROR: Not signed in after {timeout}s.")
            await store.record_login_failure(account_id, "Manual login timed out")
            return False

        auth = AuthManager(account.browser_state_dir, account.profile_dir)
        if not await auth.save_browser_state(browser.context, page):
            print("ERROR: Signed in but the browser state could not be saved.")
            return False
        await store.record_login_success(account_id)
        return True
    finally:
        await browser.close()


async def cmd_login(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()

    if args.manual:
        if not args.account_id:
            print("ERROR: --manual needs an account id")
            return 1
        ok = await run_manual_login(store, args.account_id, config, timeout=args.timeout)
        print("SUCCESS: Signed in and browser state saved." if ok else "Login failed.")
        return 0 if ok else 1

    engine = AutoLoginEngine(store, config)
    kwargs = {"show_browser": args.show_browser or None, "timeout_seconds": args.timeout}
    if args.account_id:
        result = await engine.perform_auto_login(args.account_id, **kwargs)
    else:
        result = await engine.auto_login_best_account(**kwargs)
        if result is None:
            print("ERROR: No eligible account.")
            return 1

    if result.success:
        print(f"SUCCESS: {result.account_id} signed in ({result.duration / 1000:.1f}s)")
        return 0
    print(f"FAILED: {result.account_id}: {result.error}")
    if result.requires_manual_intervention:
        print(f"Finish the login by hand with: notebooklm-pool-accounts login {result.account_id} --manual")
    return 1


async def cmd_strategy(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()
    if not args.strategy:
        print(store.get_rotation_strategy().value)
        return 0
    applied = await store.set_rotation_strategy(args.strategy)
    print(f"Rotation strategy set to {applied.value}")
    return 0


async def cmd_auto_login(args, config: Config) -> int:
    store = _open_store(config)
    await store.initialize()
    await store.set_auto_login_enabled(args.state == "on")
    print(f"Auto-login {args.state}")
    return 0


async def cmd_verify_key(args, config: Config) -> int:
    vault = CryptoVault(config.data_dir)
    if vault.verify_encryption():
        source = ENCRYPTION_KEY_ENV if os.environ.get(ENCRYPTION_KEY_ENV) else str(vault.key_file)
        print(f"Encryption key OK (from {source})")
        return 0
    print("ERROR: Encryption key failed the round-trip check.")
    return 1


COMMANDS = {
    "add": cmd_add,
    "list": cmd_list,
    "remove": cmd_remove,
    "health": cmd_health,
    "login": cmd_login,
    "strategy": cmd_strategy,
    "auto-login": cmd_auto_login,
    "verify-key": cmd_verify_key,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notebooklm-pool-accounts",
        description="Manage the NotebookLM account pool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  notebooklm-pool-accounts add you@gmail.com            # Prompts for the password
  notebooklm-pool-accounts login                        # Auto-login the best account
  notebooklm-pool-accounts login ID --manual            # Sign in by hand (2FA prompts)
  notebooklm-pool-accounts strategy failover
  notebooklm-pool-accounts auto-login off

After adding and logging in an account, start the server with: notebooklm-pool
        """
    )
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Add an account")
    add.add_argument("email")
    add.add_argument("--password", help="Password (prompted if omitted)")
    add.add_argument("--totp-secret", help="Base32 TOTP secret for 2FA")
    add.add_argument("--priority", type=int, help="Lower is tried first (default: after existing accounts)")
    add.add_argument("--notes", help="Free-form notes")
    add.add_argument("--quota", type=int, help="Daily question limit (default: NOTEBOOKLM_DAILY_QUOTA)")

    lst = sub.add_parser("list", help="List accounts")
    lst.add_argument("--json", action="store_true", help="Print JSON")

    remove = sub.add_parser("remove", help="Remove an account and its files")
    remove.add_argument("account_id")
    remove.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    health = sub.add_parser("health", help="Check every account for problems")
    health.add_argument("--json", action="store_true", help="Print JSON")

    login = sub.add_parser("login", help="Sign an account in")
    login.add_argument("account_id", nargs="?", help="Account id (default: best by rotation)")
    login.add_argument("--manual", action="store_true", help="Open a visible browser and wait for you")
    login.add_argument("--show-browser", action="store_true", help="Show the browser during auto-login")
    login.add_argument("--timeout", type=int, default=300, help="Seconds to wait (default: 300)")

    strategy = sub.add_parser("strategy", help="Show or set the rotation strategy")
    strategy.add_argument("strategy", nargs="?", choices=ROTATION_STRATEGIES.names)

    auto = sub.add_parser("auto-login", help="Turn automatic login on or off")
    auto.add_argument("state", choices=["on", "off"])

    sub.add_parser("verify-key", help="Check that the encryption key works")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = Config.from_env()

    try:
        return asyncio.run(COMMANDS[args.command](args, config))
    except KeyboardInterrupt:
        print("\nCancelled.")
        return 1
    except NotebookPoolError as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
