"""
Transaction construction, submission and confirmation.

Flow for one PendingAction:
1. Reserve a nonce for the sending account (root for Fund, source for Reclaim)
2. Quote the fee and re-read the sender balance: a Fund must be covered by
   the root, a Reclaim is capped so the source keeps its reserve
3. Sign with the sender's scoped signing capability
4. Submit; commit the nonce on acceptance, release it on rejection
5. Poll for confirmation with exponential backoff

Rejections are classified as retryable (nonce mismatch, transport errors,
timeouts) or fatal (insufficient funds, invalid destination). Retryable ones
are retried up to the submit policy's attempt budget. A Reclaim whose
source can no longer pay the fee above its reserve is skipped, not failed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from eth_utils import is_address
from loguru import logger

from hdfund.chain.base import (
    ChainClient,
    ChainClientError,
    ChainTransportError,
    FeeQuote,
    InsufficientFundsError,
    InvalidAddressError,
    NonceMismatchError,
    TxStatus,
)
from hdfund.errors import (
    ConfirmationTimeoutError,
    FatalSubmissionError,
    ReclaimSkippedError,
    RetryableSubmissionError,
    SubmissionError,
)
from hdfund.models import (
    ActionReason,
    FailureReason,
    Outcome,
    PendingAction,
    RecordStatus,
    TransactionRecord,
)
from hdfund.nonce import SequencerRegistry
from hdfund.retry import DEFAULT_CALL_TIMEOUT, RetryPolicy, bounded, sleep_unless
from hdfund.wallet.deriver import AccountDeriver, SignedTransfer

T = TypeVar("T")

ActionKey = tuple[str, int, int]

DEFAULT_SUBMIT_POLICY = RetryPolicy(attempts=3, base_delay=1.0)
DEFAULT_CONFIRM_POLICY = RetryPolicy(attempts=5, base_delay=1.0)


class TransactionSubmitter:
    """
    Turns PendingActions into confirmed transactions.

    At most one transaction per action key is outstanding at any time: while a
    send is in progress or a submitted transaction is unresolved, further
    sends for the same key return the existing record instead of sending.
    """

    def __init__(
        self,
        client: ChainClient,
        deriver: AccountDeriver,
        sequencers: SequencerRegistry,
        submit_policy: RetryPolicy = DEFAULT_SUBMIT_POLICY,
        confirm_policy: RetryPolicy = DEFAULT_CONFIRM_POLICY,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        chain_id: int | None = None,
        stop: asyncio.Event | None = None,
    ):
        self.client = client
        self.deriver = deriver
        self.sequencers = sequencers
        self.submit_policy = submit_policy
        self.confirm_policy = confirm_policy
        self.call_timeout = call_timeout
        self.stop = stop
        self._chain_id = chain_id
        self._outstanding: dict[ActionKey, TransactionRecord] = {}
        self._sending: dict[ActionKey, asyncio.Task[TransactionRecord]] = {}

    def outstanding_keys(self) -> set[ActionKey]:
        """Keys with a send in progress or an unresolved transaction."""
        return set(self._outstanding) | set(self._sending)

    def outstanding(self, key: ActionKey) -> TransactionRecord | None:
        return self._outstanding.get(key)

    async def submit(self, action: PendingAction) -> TransactionRecord:
        """Send an action and wait for its confirmation."""
        record = await self.send(action)
        return await self.confirm(record)

    async def send(self, action: PendingAction) -> TransactionRecord:
        """
        Sign and submit an action, retrying transient failures.

        Returns:
            A SUBMITTED record (or the already outstanding one for this action)

        Raises:
            RetryableSubmissionError: Attempt budget exhausted or cancelled in backoff
            FatalSubmissionError: Insufficient funds or invalid destination
        """
        key = action.key
        existing = self._outstanding.get(key)
        if existing is not None:
            logger.warning(
                f"{action.reason.value} for account {action.subject.index} already in flight "
                f"({existing.tx_id}), not sending again"
            )
            return existing

        if key in self._sending:
            return await self._sending[key]

        task = asyncio.ensure_future(self._send_with_retry(action))
        self._sending[key] = task
        try:
            return await task
        finally:
            self._sending.pop(key, None)

    async def dispatch(
        self, action: PendingAction, last_known_balance: int | None = None
    ) -> Outcome:
        """
        Send an action, capturing a submission failure in the returned Outcome.

        Fatal and exhausted-retry failures are reported with the account index,
        reason and last known balance.
        """
        outcome = Outcome(action=action, last_known_balance=last_known_balance)
        try:
            outcome.record = await self.send(action)
        except ReclaimSkippedError as e:
            outcome.error = e
            logger.warning(f"Skipping reclaim from account {action.source.index}: {e.reason}")
        except SubmissionError as e:
            outcome.error = e
            kind = "Fatal" if isinstance(e, FatalSubmissionError) else "Retryable"
            logger.error(
                f"{kind} failure for account {action.subject.index}: {e.reason} "
                f"(last known balance: {_fmt_balance(last_known_balance)})"
            )
        return outcome

    async def settle(self, outcome: Outcome) -> Outcome:
        """Wait for the outcome's transaction, if one was submitted, to resolve."""
        record = outcome.record
        if record is not None:
            await self.confirm(record)
            if record.failure == FailureReason.TIMEOUT:
                attempts = self.confirm_policy.attempts
                outcome.error = ConfirmationTimeoutError(record.tx_id, attempts)
        return outcome

    async def _send_with_retry(self, action: PendingAction) -> TransactionRecord:
        attempts = self.submit_policy.attempts
        last_error: RetryableSubmissionError | None = None

        for attempt in range(attempts):
            try:
                record = await self._send_once(action)
            except RetryableSubmissionError as e:
                last_error = e
                if attempt == attempts - 1:
                    break
                delay = self.submit_policy.delay(attempt)
                logger.warning(
                    f"{e} - retrying in {delay:.1f}s (attempt {attempt + 1}/{attempts})"
                )
                if await sleep_unless(self.stop, delay):
                    raise RetryableSubmissionError(action, "cancelled during backoff") from e
                continue

            self._outstanding[action.key] = record
            return record

        assert last_error is not None
        raise RetryableSubmissionError(
            action, f"gave up after {attempts} attempts: {last_error.reason}"
        ) from last_error

    async def _send_once(self, action: PendingAction) -> TransactionRecord:
        sender = action.source
        destination = action.destination
        if not is_address(destination.address):
            raise FatalSubmissionError(action, f"invalid destination {destination.address!r}")

        sequencer = self.sequencers.get(sender.address)
        try:
            async with sequencer.lease() as lease:
                fee = await self._call(self.client.estimate_fee(), "estimate_fee")
                chain_id = await self._get_chain_id()
                balance = await self._call(
                    self.client.get_balance(sender.address), "get_balance"
                )

                if action.reason == ActionReason.FUND:
                    value = action.amount
                    if balance < value + fee.total:
                        raise FatalSubmissionError(
                            action,
                            f"insufficient root balance: have {balance}, "
                            f"need {value + fee.total} (fee {fee.total})",
                        )
                else:
                    value = self._reclaim_value(action, balance, fee)

                with self.deriver.signer(sender) as signer:
                    signed = signer.sign_transfer(
                        destination.address, value, lease.value, fee, chain_id
                    )

                tx_id = await self._broadcast(signed)
                sequencer.commit(lease)

        except NonceMismatchError as e:
            sequencer.mark_stale()
            raise RetryableSubmissionError(action, f"nonce mismatch: {e}") from e
        except InsufficientFundsError as e:
            raise FatalSubmissionError(action, f"insufficient funds: {e}") from e
        except InvalidAddressError as e:
            raise FatalSubmissionError(action, f"invalid destination: {e}") from e
        except ChainClientError as e:
            raise RetryableSubmissionError(action, str(e)) from e

        logger.info(
            f"Submitted {action.reason.value} of {value} from account {sender.index} "
            f"to account {destination.index} (nonce {lease.value}): {tx_id}"
        )
        return TransactionRecord(
            action=action, nonce=lease.value, tx_id=tx_id, value=value, fee=fee.total
        )

    def _reclaim_value(self, action: PendingAction, balance: int, fee: FeeQuote) -> int:
        """
        Value of a reclaim transfer given the source balance read under its lease.

        The planned amount shrinks if the account spent since it was polled, and
        the fee comes out of it, so the source ends at or above its reserve.
        """
        reclaimable = max(min(action.amount, balance - action.reserve), 0)
        value = reclaimable - fee.total
        if value <= 0:
            raise ReclaimSkippedError(
                action,
                f"reclaimable {reclaimable} does not cover fee {fee.total}",
                balance=balance,
            )
        return value

    async def _broadcast(self, signed: SignedTransfer) -> str:
        """
        Submit a signed transaction.

        When submission fails ambiguously (transport error, or the node says
        the nonce is used) the transaction may already be in the pool; its
        hash is checked before reporting failure, so a retry never sends a
        second transaction for the same action.
        """
        try:
            return await self._call(
                self.client.submit_transaction(signed.raw), "submit_transaction"
            )
        except (ChainTransportError, NonceMismatchError):
            status = await self._query_status(signed.tx_id, default=TxStatus.UNKNOWN)
            if status in (TxStatus.PENDING, TxStatus.CONFIRMED):
                logger.info(f"Transaction {signed.tx_id} was accepted despite submit error")
                return signed.tx_id
            raise

    async def confirm(self, record: TransactionRecord) -> TransactionRecord:
        """
        Poll until the transaction is confirmed, fails, or the budget runs out.

        A timed-out record stays outstanding: it is re-checked with recheck()
        rather than resubmitted.
        """
        if record.is_terminal:
            return record

        attempts = self.confirm_policy.attempts
        for attempt in range(attempts):
            status = await self._query_status(record.tx_id)
            if self._resolve(record, status):
                return record
            if attempt < attempts - 1:
                await asyncio.sleep(self.confirm_policy.delay(attempt))

        record.fail(FailureReason.TIMEOUT, f"not confirmed after {attempts} checks")
        logger.warning(
            f"Transaction {record.tx_id} for account {record.action.subject.index} "
            f"not confirmed after {attempts} checks; will re-check next cycle"
        )
        return record

    async def recheck(self, key: ActionKey) -> TransactionRecord | None:
        """
        Re-query an outstanding transaction.

        Confirmed, failed and dropped transactions are cleared (the latter two
        also force a nonce resync for the sender); pending ones stay.
        """
        record = self._outstanding.get(key)
        if record is None:
            return None

        status = await self._query_status(record.tx_id)
        if self._resolve(record, status):
            return record
        if status == TxStatus.UNKNOWN:
            record.fail(FailureReason.TIMEOUT, "dropped by node")
            self._clear(record, resync=True)
            logger.warning(f"Transaction {record.tx_id} no longer known to node, re-planning")
        else:
            logger.info(f"Transaction {record.tx_id} still pending")
        return record

    def _resolve(self, record: TransactionRecord, status: TxStatus) -> bool:
        if status == TxStatus.CONFIRMED:
            record.status = RecordStatus.CONFIRMED
            record.failure = None
            record.detail = ""
            self._clear(record, resync=False)
            logger.info(
                f"Confirmed {record.action.reason.value} of {record.value} "
                f"for account {record.action.subject.index}: {record.tx_id}"
            )
            return True
        if status == TxStatus.FAILED:
            record.fail(FailureReason.REVERTED, "transaction failed on chain")
            self._clear(record, resync=True)
            logger.error(
                f"Transaction {record.tx_id} for account {record.action.subject.index} failed"
            )
            return True
        return False

    def _clear(self, record: TransactionRecord, resync: bool) -> None:
        key = record.action.key
        if self._outstanding.get(key) is record:
            del self._outstanding[key]
        if resync:
            self.sequencers.mark_stale(record.action.source.address)

    async def _query_status(self, tx_id: str, default: TxStatus = TxStatus.PENDING) -> TxStatus:
        """Query transaction status; a failed query reports `default`."""
        try:
            return await self._call(
                self.client.get_transaction_status(tx_id), "get_transaction_status"
            )
        except ChainClientError as e:
            logger.debug(f"Status check for {tx_id} failed: {e}")
            return default

    async def _get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._call(self.client.get_chain_id(), "get_chain_id")
        return self._chain_id

    async def _call(self, call: Awaitable[T], what: str) -> T:
        return await bounded(call, self.call_timeout, what)


def _fmt_balance(balance: int | None) -> str:
    return "unknown" if balance is None else str(balance)

