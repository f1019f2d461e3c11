"""
Sweeping derived accounts back to the root account.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from hdfund.chain.base import ChainClientError
from hdfund.errors import FatalSubmissionError, ReclaimSkippedError
from hdfund.models import (
    Account,
    ActionReason,
    BalanceSnapshot,
    FundingPolicy,
    Outcome,
    PendingAction,
)
from hdfund.observer import BalanceObserver
from hdfund.retry import bounded
from hdfund.submitter import TransactionSubmitter

DEFAULT_RECLAIM_CONCURRENCY = 4


@dataclass(frozen=True)
class SkippedReclaim:
    """An account left alone during reclaim, with the reason why."""

    account: Account
    balance: int | None
    reason: str


@dataclass
class ReclaimPlan:
    actions: list[PendingAction] = field(default_factory=list)
    skipped: list[SkippedReclaim] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(action.amount for action in self.actions)


@dataclass
class ReclaimResult:
    plan: ReclaimPlan
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def fatal(self) -> bool:
        return any(outcome.fatal for outcome in self.outcomes)


class ReclaimCoordinator:
    """
    Moves every non-root account's balance above its reserve to the root.

    Each reclaim transfer pays its own fee out of the reclaimed amount, so the
    source account ends at its reserve. The submitter re-reads the source
    balance before signing; an account that spent funds since the poll is
    reclaimed less, or skipped if the fee no longer fits. Sends from different source
    accounts run concurrently; each source is serialized on its own nonce
    sequencer by the submitter.
    """

    def __init__(
        self,
        root: Account,
        observer: BalanceObserver,
        submitter: TransactionSubmitter,
        max_concurrency: int = DEFAULT_RECLAIM_CONCURRENCY,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.root = root
        self.observer = observer
        self.submitter = submitter
        self.max_concurrency = max_concurrency

    def plan_reclaim(
        self,
        snapshots: Iterable[BalanceSnapshot],
        policy: FundingPolicy,
        fee: int = 0,
    ) -> ReclaimPlan:
        """
        Plan reclaim actions in ascending account index order.

        Accounts whose reclaimable amount (balance - reserve) does not exceed
        `fee` are skipped, as are accounts whose balance is unknown.
        """
        plan = ReclaimPlan()
        for snapshot in sorted(snapshots, key=lambda s: s.account.index):
            account = snapshot.account
            if account.index == policy.root_index:
                continue

            if snapshot.balance is None:
                plan.skipped.append(
                    SkippedReclaim(account, snapshot.last_known, "balance unknown")
                )
                continue

            if snapshot.balance <= policy.reserve:
                continue

            amount = snapshot.balance - policy.reserve
            if amount <= fee:
                plan.skipped.append(
                    SkippedReclaim(
                        account,
                        snapshot.balance,
                        f"reclaimable {amount} does not cover fee {fee}",
                    )
                )
                continue

            plan.actions.append(
                PendingAction(
                    source=account,
                    destination=self.root,
                    amount=amount,
                    reason=ActionReason.RECLAIM,
                    reserve=policy.reserve,
                )
            )

        for skipped in plan.skipped:
            logger.warning(
                f"Skipping reclaim from account {skipped.account.index}: {skipped.reason}"
            )
        if plan.actions:
            logger.info(f"Planned {len(plan.actions)} reclaim action(s), total {plan.total}")
        return plan

    async def run(self, accounts: Sequence[Account], policy: FundingPolicy) -> ReclaimResult:
        """Poll, plan and execute a reclaim of `accounts` into the root account."""
        snapshots = await self.observer.poll(accounts)
        fee = await self._quote_fee()
        plan = self.plan_reclaim(snapshots, policy, fee)
        result = ReclaimResult(plan=plan)
        if not plan.actions:
            logger.info("Nothing to reclaim")
            return result

        halt = asyncio.Event()
        limiter = asyncio.Semaphore(self.max_concurrency)

        async def reclaim_one(action: PendingAction) -> Outcome:
            last_known = self.observer.last_known(action.source.index)
            async with limiter:
                if halt.is_set():
                    return Outcome(action=action, last_known_balance=last_known, halted=True)
                outcome = await self.submitter.dispatch(action, last_known)
            if isinstance(outcome.error, FatalSubmissionError):
                halt.set()
            return await self.submitter.settle(outcome)

        outcomes = await asyncio.gather(*(reclaim_one(a) for a in plan.actions))
        for outcome in outcomes:
            error = outcome.error
            if isinstance(error, ReclaimSkippedError):
                plan.skipped.append(
                    SkippedReclaim(error.action.source, error.balance, error.reason)
                )
            else:
                result.outcomes.append(outcome)
        return result

    async def _quote_fee(self) -> int:
        client = self.submitter.client
        try:
            quote = await bounded(client.estimate_fee(), self.submitter.call_timeout, "fee")
        except ChainClientError as e:
            logger.warning(f"Fee estimate failed ({e}); planning reclaim without fee margin")
            return 0
        return quote.total
