"""
Nonce sequencing for accounts that send transactions.

Each sending account gets exactly one NonceSequencer per process. Reserving a
nonce enters the account's critical section; committing or releasing the
lease leaves it. Only one lease per account is Reserved at any time, so
nonce reservation and submission are serialized per account.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from loguru import logger

from hdfund.chain.base import ChainClient
from hdfund.models import LeaseState, NonceLease
from hdfund.retry import DEFAULT_CALL_TIMEOUT, bounded


class NonceSequencer:
    """
    Owns the next-nonce counter of one account.

    Serializes tasks on a single event loop: the critical section is an
    asyncio.Lock, so all reservations for the account must come from that
    loop (one engine per process owns its sequencers).
    """

    def __init__(
        self,
        client: ChainClient,
        address: str,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        self.client = client
        self.address = address
        self.call_timeout = call_timeout
        self._lock = asyncio.Lock()
        self._next: int | None = None
        self._stale = True
        self._current: NonceLease | None = None

    @property
    def next_nonce(self) -> int | None:
        """Counter value the next lease will get, None before first sync."""
        return self._next

    def mark_stale(self) -> None:
        """Force a re-read of the chain nonce before the next lease."""
        if not self._stale:
            logger.debug(f"Nonce counter for {self.address} marked for resync")
        self._stale = True

    async def reserve(self) -> NonceLease:
        """
        Reserve the next nonce.

        Waits until any outstanding lease for this account is committed or
        released. Re-reads the chain nonce on first use and after mark_stale().
        """
        await self._lock.acquire()
        try:
            if self._stale or self._next is None:
                chain_nonce = await bounded(
                    self.client.get_nonce(self.address), self.call_timeout, "get_nonce"
                )
                if self._next is not None and chain_nonce != self._next:
                    logger.info(
                        f"Resynced nonce for {self.address}: {self._next} -> {chain_nonce}"
                    )
                self._next = chain_nonce
                self._stale = False
        except BaseException:
            self._lock.release()
            raise

        lease = NonceLease(address=self.address, value=self._next)
        self._next += 1
        self._current = lease
        return lease

    def commit(self, lease: NonceLease) -> None:
        """Mark the lease's nonce as used by an accepted transaction."""
        if not self._finish(lease, LeaseState.COMMITTED):
            return
        logger.debug(f"Committed nonce {lease.value} for {self.address}")

    def release(self, lease: NonceLease) -> None:
        """Give the lease's nonce back; the next lease reuses it."""
        if not self._finish(lease, LeaseState.RELEASED):
            return
        if self._next is not None and self._next == lease.value + 1:
            self._next = lease.value
        logger.debug(f"Released nonce {lease.value} for {self.address}")

    def _finish(self, lease: NonceLease, state: LeaseState) -> bool:
        if lease.state != LeaseState.RESERVED:
            logger.warning(
                f"Ignoring {state.value} of nonce {lease.value} for {self.address}: "
                f"lease already {lease.state.value}"
            )
            return False
        if lease is not self._current:
            logger.warning(
                f"Ignoring {state.value} of nonce {lease.value}: not the active lease "
                f"for {self.address}"
            )
            return False

        lease.state = state
        self._current = None
        self._lock.release()
        return True

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[NonceLease]:
        """Reserve a nonce; release it on exit unless the body committed it."""
        lease = await self.reserve()
        try:
            yield lease
        finally:
            if lease.state == LeaseState.RESERVED:
                self.release(lease)


class SequencerRegistry:
    """Hands out the single NonceSequencer of each sending account."""

    def __init__(self, client: ChainClient, call_timeout: float = DEFAULT_CALL_TIMEOUT):
        self.client = client
        self.call_timeout = call_timeout
        self._sequencers: dict[str, NonceSequencer] = {}

    def get(self, address: str) -> NonceSequencer:
        if address not in self._sequencers:
            self._sequencers[address] = NonceSequencer(self.client, address, self.call_timeout)
        return self._sequencers[address]

    def mark_stale(self, address: str) -> None:
        if address in self._sequencers:
            self._sequencers[address].mark_stale()
