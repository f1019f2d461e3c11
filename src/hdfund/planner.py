"""
Funding decisions from balance snapshots.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence

from loguru import logger

from hdfund.models import (
    Account,
    ActionReason,
    BalanceSnapshot,
    FundingPolicy,
    PendingAction,
)
from hdfund.observer import BalanceObserver


class FundingPlanner:
    """Computes Fund actions from the root account to accounts below threshold."""

    def __init__(self, root: Account):
        self.root = root

    def plan(
        self, snapshots: Iterable[BalanceSnapshot], policy: FundingPolicy
    ) -> list[PendingAction]:
        """
        One action per non-root account below threshold, topping it up to target.

        Unknown snapshots count as below threshold; their amount is computed
        from the last known balance (0 if the account was never observed).
        Actions are ordered by ascending account index.
        """
        actions = []
        for snapshot in sorted(snapshots, key=lambda s: s.account.index):
            account = snapshot.account
            if account.index == policy.root_index:
                continue
            if not BalanceObserver.below_threshold(snapshot, policy):
                continue

            balance = snapshot.best_balance or 0
            amount = max(policy.target - balance, 0)
            if amount == 0:
                continue

            if snapshot.is_unknown:
                logger.warning(
                    f"Account {account.index} balance unknown, planning top-up of {amount} "
                    f"from last known balance {balance}"
                )
            actions.append(self._fund(account, amount))

        if actions:
            logger.info(
                f"Planned {len(actions)} funding action(s), "
                f"total {sum(a.amount for a in actions)}"
            )
        return actions

    def plan_initial(
        self, accounts: Iterable[Account], policy: FundingPolicy
    ) -> list[PendingAction]:
        """Fund every non-root account with the full target, whatever its balance."""
        return [
            self._fund(account, policy.target)
            for account in sorted(accounts, key=lambda a: a.index)
            if account.index != policy.root_index and policy.target > 0
        ]

    @staticmethod
    def exclude(
        actions: Sequence[PendingAction], keys: Collection[tuple[str, int, int]]
    ) -> list[PendingAction]:
        """Drop actions that already have a transaction in flight."""
        kept = [action for action in actions if action.key not in keys]
        if len(kept) != len(actions):
            logger.info(f"Skipping {len(actions) - len(kept)} action(s) still in flight")
        return kept

    def _fund(self, account: Account, amount: int) -> PendingAction:
        return PendingAction(
            source=self.root,
            destination=account,
            amount=amount,
            reason=ActionReason.FUND,
        )
