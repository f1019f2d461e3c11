"""
Distribution engine: the three operating modes.

- init-dist: fund every derived account to target, once
- cont-fund: poll, top up accounts below threshold, sleep, repeat until stopped
- reclaim: sweep every derived account above its reserve back to the root

A fatal submission error halts further submissions in the run; transactions
already submitted are still followed to a terminal state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from hdfund.chain.base import ChainClient
from hdfund.models import Account, BalanceSnapshot, FundingPolicy, Outcome, PendingAction
from hdfund.nonce import SequencerRegistry
from hdfund.observer import DEFAULT_POLL_CONCURRENCY, BalanceObserver
from hdfund.planner import FundingPlanner
from hdfund.reclaim import DEFAULT_RECLAIM_CONCURRENCY, ReclaimCoordinator, SkippedReclaim
from hdfund.retry import DEFAULT_CALL_TIMEOUT, RetryPolicy
from hdfund.submitter import DEFAULT_CONFIRM_POLICY, DEFAULT_SUBMIT_POLICY, TransactionSubmitter
from hdfund.wallet.deriver import AccountDeriver

DEFAULT_POLL_INTERVAL = 20.0


class EngineState(str, Enum):
    IDLE = "idle"
    INIT_DIST = "init_dist"
    CONT_FUND = "cont_fund"
    RECLAIM = "reclaim"
    DONE = "done"
    FATAL = "fatal"


@dataclass
class RunReport:
    """
    Outcome of one engine run.

    For cont-fund, `outcomes` holds the latest cycle only; `confirmed` and
    `failed` count over all cycles.
    """

    mode: str
    state: EngineState = EngineState.IDLE
    outcomes: list[Outcome] = field(default_factory=list)
    skipped: list[SkippedReclaim] = field(default_factory=list)
    cycles: int = 0
    confirmed: int = 0
    failed: int = 0

    @property
    def failures(self) -> list[Outcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def exit_code(self) -> int:
        if self.state == EngineState.FATAL:
            return 1
        if self.mode != "cont-fund" and self.failures:
            return 1
        return 0

    def record(self, outcomes: Sequence[Outcome]) -> None:
        self.confirmed += sum(1 for o in outcomes if o.ok)
        self.failed += sum(1 for o in outcomes if not o.ok)


class DistributionEngine:
    """
    Composes derivation, observation, planning and submission into the
    operating modes. Components not passed in are built from the arguments.
    """

    def __init__(
        self,
        deriver: AccountDeriver,
        client: ChainClient,
        policy: FundingPolicy,
        account_count: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        submit_policy: RetryPolicy = DEFAULT_SUBMIT_POLICY,
        confirm_policy: RetryPolicy = DEFAULT_CONFIRM_POLICY,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        chain_id: int | None = None,
        poll_concurrency: int = DEFAULT_POLL_CONCURRENCY,
        reclaim_concurrency: int = DEFAULT_RECLAIM_CONCURRENCY,
        observer: BalanceObserver | None = None,
        submitter: TransactionSubmitter | None = None,
    ):
        self.deriver = deriver
        self.client = client
        self.policy = policy
        self.poll_interval = poll_interval
        self.state = EngineState.IDLE
        self._stop = asyncio.Event()

        self.accounts: list[Account] = list(deriver.derive_range(0, account_count))
        self.root = deriver.derive(policy.root_index)

        self.observer = observer or BalanceObserver(
            client, max_concurrency=poll_concurrency, call_timeout=call_timeout
        )
        self.submitter = submitter or TransactionSubmitter(
            client,
            deriver,
            SequencerRegistry(client, call_timeout),
            submit_policy=submit_policy,
            confirm_policy=confirm_policy,
            call_timeout=call_timeout,
            chain_id=chain_id,
            stop=self._stop,
        )
        self.planner = FundingPlanner(self.root)
        self.reclaimer = ReclaimCoordinator(
            self.root, self.observer, self.submitter, max_concurrency=reclaim_concurrency
        )

        logger.info(
            f"Engine ready: {len(self.accounts)} accounts, root {self.root.index} "
            f"({self.root.address}), threshold {policy.threshold}, target {policy.target}"
        )

    def stop(self) -> None:
        """Request a graceful stop; in-flight transactions still resolve."""
        if not self._stop.is_set():
            logger.info("Stop requested, finishing in-flight submissions...")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def init_dist(self) -> RunReport:
        """Fund every non-root account with the target amount."""
        report = self._begin("init-dist", EngineState.INIT_DIST)
        actions = self.planner.plan_initial(self.accounts, self.policy)
        logger.info(f"Initial distribution: {len(actions)} account(s) x {self.policy.target}")
        report.outcomes = await self._execute(actions)
        report.record(report.outcomes)
        return self._finish(report)

    async def cont_fund(self) -> RunReport:
        """Top up accounts below threshold every poll interval until stopped."""
        report = self._begin("cont-fund", EngineState.CONT_FUND)
        logger.info(f"Continuous funding every {self.poll_interval}s")

        async for snapshots in self.observer.watch(
            self.accounts, self.poll_interval, self._stop
        ):
            report.cycles += 1
            for key in sorted(self.submitter.outstanding_keys()):
                await self.submitter.recheck(key)

            actions = self.planner.exclude(
                self.planner.plan(snapshots, self.policy), self.submitter.outstanding_keys()
            )
            report.outcomes = await self._execute(actions)
            report.record(report.outcomes)

            if self.state == EngineState.FATAL:
                break
            logger.debug(f"Cycle {report.cycles} done, next check in {self.poll_interval}s")

        return self._finish(report)

    async def reclaim(self) -> RunReport:
        """Sweep balances above reserve back to the root account."""
        report = self._begin("reclaim", EngineState.RECLAIM)
        result = await self.reclaimer.run(self.accounts, self.policy)
        report.outcomes = result.outcomes
        report.skipped = result.plan.skipped
        report.record(report.outcomes)
        if result.fatal:
            self.state = EngineState.FATAL
        return self._finish(report)

    async def show(self) -> list[BalanceSnapshot]:
        """Log every derived account with its address and balance."""
        snapshots = await self.observer.poll(self.accounts)
        for snapshot in snapshots:
            account = snapshot.account
            marker = " (root)" if account.index == self.root.index else ""
            balance = "unknown" if snapshot.balance is None else f"{snapshot.balance:,}"
            logger.info(f"Account {account.index}{marker}: {account.address} balance {balance}")
        return snapshots

    async def _execute(self, actions: Sequence[PendingAction]) -> list[Outcome]:
        """
        Send actions one by one in plan order, then wait for all to resolve.

        After a fatal error (or a stop request) the remaining actions are not
        attempted; what was already submitted is still confirmed.
        """
        outcomes = []
        for action in actions:
            last_known = self.observer.last_known(action.subject.index)
            if self.state == EngineState.FATAL or self.stopping:
                outcomes.append(Outcome(action=action, last_known_balance=last_known, halted=True))
                continue

            outcome = await self.submitter.dispatch(action, last_known)
            if outcome.fatal:
                logger.error("Fatal submission error, halting further submissions in this run")
                self.state = EngineState.FATAL
            outcomes.append(outcome)

        await asyncio.gather(*(self.submitter.settle(outcome) for outcome in outcomes))
        return outcomes

    def _begin(self, mode: str, state: EngineState) -> RunReport:
        logger.info(f"Starting {mode}")
        self.state = state
        return RunReport(mode=mode, state=state)

    def _finish(self, report: RunReport) -> RunReport:
        if self.state != EngineState.FATAL:
            self.state = EngineState.DONE
        report.state = self.state

        for outcome in report.failures:
            logger.warning(
                f"Account {outcome.action.subject.index}: {outcome.reason or 'unresolved'} "
                f"(last known balance: {outcome.last_known_balance})"
            )
        logger.info(
            f"{report.mode} finished ({report.state.value}): {report.confirmed} confirmed, "
            f"{report.failed} failed, {len(report.skipped)} skipped"
        )
        return report
