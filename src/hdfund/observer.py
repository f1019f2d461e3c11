"""
Balance observation across derived accounts.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence

from loguru import logger

from hdfund.chain.base import ChainClient, ChainClientError
from hdfund.errors import ObservationError
from hdfund.models import Account, BalanceSnapshot, FundingPolicy
from hdfund.retry import DEFAULT_CALL_TIMEOUT, bounded, sleep_unless

DEFAULT_POLL_CONCURRENCY = 8


class BalanceObserver:
    """
    Polls account balances. Read-only with respect to chain state.

    Reads run concurrently up to `max_concurrency`. A failed read yields an
    Unknown snapshot for that account instead of failing the batch.
    """

    def __init__(
        self,
        client: ChainClient,
        max_concurrency: int = DEFAULT_POLL_CONCURRENCY,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.client = client
        self.call_timeout = call_timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._last_known: dict[int, int] = {}

    def last_known(self, index: int) -> int | None:
        """Last balance successfully observed for an account."""
        return self._last_known.get(index)

    async def poll(self, accounts: Sequence[Account]) -> list[BalanceSnapshot]:
        """Read all balances; snapshots come back in the order of `accounts`."""
        snapshots = await asyncio.gather(*(self._observe(account) for account in accounts))
        unknown = sum(1 for s in snapshots if s.is_unknown)
        if unknown:
            logger.warning(f"Balance poll: {unknown}/{len(snapshots)} accounts unknown")
        else:
            logger.debug(f"Balance poll: {len(snapshots)} accounts observed")
        return list(snapshots)

    async def _observe(self, account: Account) -> BalanceSnapshot:
        async with self._semaphore:
            try:
                balance = await bounded(
                    self.client.get_balance(account.address), self.call_timeout, "get_balance"
                )
            except ChainClientError as e:
                error = ObservationError(account.index, str(e))
                logger.warning(str(error))
                return BalanceSnapshot(
                    account=account,
                    balance=None,
                    observed_at=time.monotonic(),
                    last_known=self._last_known.get(account.index),
                    error=error.reason,
                )

        self._last_known[account.index] = balance
        logger.debug(f"Account {account.index} ({account.address}) balance: {balance}")
        return BalanceSnapshot(
            account=account,
            balance=balance,
            observed_at=time.monotonic(),
            last_known=balance,
        )

    async def watch(
        self,
        accounts: Sequence[Account],
        interval: float,
        stop: asyncio.Event,
    ) -> AsyncIterator[list[BalanceSnapshot]]:
        """
        Poll every `interval` seconds until `stop` is set.

        The wait starts after the consumer has handled the previous batch.
        """
        while not stop.is_set():
            yield await self.poll(accounts)
            if await sleep_unless(stop, interval):
                break

    @staticmethod
    def below_threshold(snapshot: BalanceSnapshot, policy: FundingPolicy) -> bool:
        """True iff balance < threshold. Unknown snapshots count as below."""
        if snapshot.balance is None:
            return True
        return snapshot.balance < policy.threshold
