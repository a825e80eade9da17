"""Account rotation: pick the account that serves the next question."""

import random
from typing import Sequence

from .constants import MAX_CONSECUTIVE_FAILURES, RotationStrategy
from .models import Account, AccountSelection


def is_eligible(account: Account) -> bool:
    """Check whether an account may be selected at all."""
    if not account.config.enabled:
        return False
    if account.quota.used >= account.quota.limit:
        return False
    if account.state.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
        return False
    return True


def select_account(
    accounts: Sequence[Account],
    strategy: RotationStrategy,
    last_index: int = -1,
    rng: random.Random | None = None,
) -> tuple[AccountSelection | None, int]:
    """Choose an account according to ``strategy``.

    Args:
        accounts: All configured accounts in config-file order.
        strategy: Rotation strategy.
        last_index: Index into ``accounts`` of the previous round-robin pick.
        rng: Random source for the ``random`` strategy.

    Returns:
        ``(selection, last_index)``. ``selection`` is None when no account is
        eligible. ``last_index`` is the updated round-robin cursor.
    """
    eligible = [a for a in accounts if is_eligible(a)]
    if not eligible:
        return None, last_index

    if strategy == RotationStrategy.LEAST_USED:
        # Stable sort keeps config order for full ties
        account = sorted(eligible, key=lambda a: (a.quota.used, a.config.priority))[0]
        reason = f"Least used ({account.quota.used}/{account.quota.limit} queries today)"
        return AccountSelection(account, reason), last_index

    if strategy == RotationStrategy.ROUND_ROBIN:
        total = len(accounts)
        for step in range(1, total + 1):
            index = (last_index + step) % total
            if is_eligible(accounts[index]):
                reason = f"Round robin (position {index + 1}/{total})"
                return AccountSelection(accounts[index], reason), index
        return None, last_index

    if strategy == RotationStrategy.FAILOVER:
        account = sorted(eligible, key=lambda a: a.config.priority)[0]
        return AccountSelection(account, f"Failover (priority {account.config.priority})"), last_index

    if strategy == RotationStrategy.RANDOM:
        account = (rng or random).choice(eligible)
        return AccountSelection(account, f"Random selection ({len(eligible)} eligible)"), last_index

    raise ValueError(f"Unknown rotation strategy: {strategy}")
