"""
Tests for transaction submission and confirmation.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from conftest import FEE, NO_WAIT, FakeChainClient

from hdfund.chain.base import ChainTransportError, TxStatus
from hdfund.errors import (
    FatalSubmissionError,
    ReclaimSkippedError,
    RetryableSubmissionError,
)
from hdfund.models import (
    Account,
    ActionReason,
    FailureReason,
    PendingAction,
    RecordStatus,
)
from hdfund.nonce import SequencerRegistry
from hdfund.retry import RetryPolicy
from hdfund.submitter import TransactionSubmitter

ONE_CHECK = RetryPolicy(attempts=1, base_delay=0.0)


class AcceptThenDropConnection(FakeChainClient):
    """Applies the next submission, then reports a transport error for it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.drop_next = 0

    async def submit_transaction(self, raw_tx: str) -> str:
        tx_id = await super().submit_transaction(raw_tx)
        if self.drop_next:
            self.drop_next -= 1
            raise ChainTransportError("connection reset by peer")
        return tx_id


@pytest.fixture
def accounts(deriver):
    return list(deriver.derive_range(0, 4))


@pytest.fixture
def root(accounts):
    return accounts[0]


def make_submitter(chain, deriver, confirm_policy=ONE_CHECK):
    return TransactionSubmitter(
        chain,
        deriver,
        SequencerRegistry(chain),
        submit_policy=NO_WAIT,
        confirm_policy=confirm_policy,
    )


def fund(root: Account, destination: Account, amount: int) -> PendingAction:
    return PendingAction(
        source=root, destination=destination, amount=amount, reason=ActionReason.FUND
    )


class TestFund:
    @pytest.mark.asyncio
    async def test_submit_and_confirm(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        submitter = make_submitter(chain, deriver)

        record = await submitter.submit(fund(root, accounts[1], 500))

        assert record.status == RecordStatus.CONFIRMED
        assert record.value == 500
        assert record.fee == FEE
        assert chain.balances[accounts[1].address] == 500
        assert chain.balances[root.address] == 10 * FEE - 500 - FEE
        assert submitter.outstanding_keys() == set()

    @pytest.mark.asyncio
    async def test_sequential_nonces(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        submitter = make_submitter(chain, deriver)

        for destination in accounts[1:]:
            await submitter.submit(fund(root, destination, 10))

        assert [tx.nonce for tx in chain.sent] == [0, 1, 2]
        assert chain.nonce_reads == 1

    @pytest.mark.asyncio
    async def test_resyncs_after_external_nonce_use(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        submitter = make_submitter(chain, deriver)
        await submitter.submit(fund(root, accounts[1], 10))

        # Someone else sent from the root account; our counter is now too low
        chain.nonces[root.address] += 1
        record = await submitter.submit(fund(root, accounts[2], 10))

        assert record.status == RecordStatus.CONFIRMED
        assert len(chain.sent) == 2
        assert chain.sent[1].nonce == 2
        assert chain.nonce_reads == 2

    @pytest.mark.asyncio
    async def test_insufficient_root_balance_is_fatal(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 100
        submitter = make_submitter(chain, deriver)

        with pytest.raises(FatalSubmissionError, match="insufficient root balance"):
            await submitter.send(fund(root, accounts[1], 500))

        assert chain.sent == []
        # The nonce went back unused
        assert submitter.sequencers.get(root.address).next_nonce == 0

    @pytest.mark.asyncio
    async def test_invalid_destination_is_fatal(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        bogus = replace(accounts[1], address="0xnot-an-address")
        submitter = make_submitter(chain, deriver)

        with pytest.raises(FatalSubmissionError, match="invalid destination"):
            await submitter.send(fund(root, bogus, 10))
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.submit_errors = [ChainTransportError("timeout"), ChainTransportError("timeout")]
        submitter = make_submitter(chain, deriver)

        record = await submitter.send(fund(root, accounts[1], 10))

        assert record.nonce == 0
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.submit_errors = [ChainTransportError("down")] * 3
        submitter = make_submitter(chain, deriver)

        with pytest.raises(RetryableSubmissionError, match="gave up after 3 attempts"):
            await submitter.send(fund(root, accounts[1], 10))
        assert chain.sent == []
        assert submitter.outstanding_keys() == set()


class TestAtMostOnce:
    @pytest.mark.asyncio
    async def test_accepted_despite_transport_error(self, deriver, root, accounts):
        chain = AcceptThenDropConnection({root.address: 10 * FEE})
        chain.drop_next = 1
        submitter = make_submitter(chain, deriver)

        record = await submitter.submit(fund(root, accounts[1], 10))

        assert record.status == RecordStatus.CONFIRMED
        assert len(chain.sent) == 1
        assert record.tx_id == chain.sent[0].tx_id

    @pytest.mark.asyncio
    async def test_concurrent_sends_share_one_transaction(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        submitter = make_submitter(chain, deriver)
        action = fund(root, accounts[1], 10)

        first, second = await asyncio.gather(submitter.send(action), submitter.send(action))

        assert first is second
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_outstanding_record_not_resent(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.auto_confirm = False
        submitter = make_submitter(chain, deriver)
        action = fund(root, accounts[1], 10)

        record = await submitter.send(action)
        again = await submitter.send(action)

        assert again is record
        assert submitter.outstanding_keys() == {action.key}
        assert len(chain.sent) == 1


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_timeout_keeps_record_outstanding(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.auto_confirm = False
        submitter = make_submitter(chain, deriver)
        action = fund(root, accounts[1], 10)

        record = await submitter.submit(action)

        assert record.status == RecordStatus.FAILED
        assert record.failure == FailureReason.TIMEOUT
        assert submitter.outstanding(action.key) is record

        chain.confirm_all()
        rechecked = await submitter.recheck(action.key)

        assert rechecked.status == RecordStatus.CONFIRMED
        assert submitter.outstanding_keys() == set()

    @pytest.mark.asyncio
    async def test_recheck_pending_keeps_record(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.auto_confirm = False
        submitter = make_submitter(chain, deriver)
        action = fund(root, accounts[1], 10)
        await submitter.send(action)

        await submitter.recheck(action.key)

        assert submitter.outstanding_keys() == {action.key}

    @pytest.mark.asyncio
    async def test_recheck_dropped_forces_resync(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.auto_confirm = False
        submitter = make_submitter(chain, deriver)
        action = fund(root, accounts[1], 10)
        record = await submitter.send(action)

        del chain.statuses[record.tx_id]
        await submitter.recheck(action.key)

        assert submitter.outstanding_keys() == set()
        await submitter.send(fund(root, accounts[2], 10))
        assert chain.nonce_reads == 2

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.auto_confirm = False
        submitter = make_submitter(chain, deriver)
        action = fund(root, accounts[1], 10)
        record = await submitter.send(action)

        chain.statuses[record.tx_id] = TxStatus.FAILED
        await submitter.confirm(record)

        assert record.status == RecordStatus.FAILED
        assert record.failure == FailureReason.REVERTED
        assert submitter.outstanding_keys() == set()

    @pytest.mark.asyncio
    async def test_recheck_unknown_key(self, chain, deriver, root, accounts):
        submitter = make_submitter(chain, deriver)
        assert await submitter.recheck(("fund", 0, 1)) is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_fatal_captured_in_outcome(self, chain, deriver, root, accounts):
        submitter = make_submitter(chain, deriver)

        outcome = await submitter.dispatch(fund(root, accounts[1], 500), last_known_balance=40)

        assert outcome.fatal
        assert not outcome.ok
        assert outcome.last_known_balance == 40
        assert "insufficient root balance" in outcome.reason

    @pytest.mark.asyncio
    async def test_settle_reports_timeout(self, chain, deriver, root, accounts):
        chain.balances[root.address] = 10 * FEE
        chain.auto_confirm = False
        submitter = make_submitter(chain, deriver)

        outcome = await submitter.dispatch(fund(root, accounts[1], 10))
        await submitter.settle(outcome)

        assert not outcome.ok
        assert not outcome.fatal
        assert outcome.error is not None
        assert outcome.record.tx_id in str(outcome.error)


class TestReclaimTransfer:
    @pytest.mark.asyncio
    async def test_fee_paid_from_amount(self, chain, deriver, root, accounts):
        source = accounts[2]
        chain.balances[source.address] = 3 * FEE
        submitter = make_submitter(chain, deriver)
        action = PendingAction(
            source=source, destination=root, amount=2 * FEE, reason=ActionReason.RECLAIM
        )

        record = await submitter.submit(action)

        assert record.value == FEE
        assert chain.balances[source.address] == FEE
        assert chain.balances[root.address] == FEE
        assert chain.sent[0].sender == source.address

    @pytest.mark.asyncio
    async def test_amount_not_covering_fee_is_skipped(self, chain, deriver, root, accounts):
        source = accounts[2]
        chain.balances[source.address] = FEE
        submitter = make_submitter(chain, deriver)
        action = PendingAction(
            source=source, destination=root, amount=FEE, reason=ActionReason.RECLAIM
        )

        with pytest.raises(ReclaimSkippedError, match="does not cover fee") as exc_info:
            await submitter.send(action)

        assert exc_info.value.balance == FEE
        assert chain.sent == []
        assert submitter.sequencers.get(source.address).next_nonce == 0

    @pytest.mark.asyncio
    async def test_capped_when_source_spent_since_planning(
        self, chain, deriver, root, accounts
    ):
        source = accounts[2]
        action = PendingAction(
            source=source,
            destination=root,
            amount=150_000,
            reason=ActionReason.RECLAIM,
            reserve=50_000,
        )
        # Planned at 200_000; the account has spent 40_000 since
        chain.balances[source.address] = 160_000
        submitter = make_submitter(chain, deriver)

        record = await submitter.submit(action)

        assert record.value == 110_000 - FEE
        assert chain.balances[source.address] == 50_000

    @pytest.mark.asyncio
    async def test_dispatch_reports_skip_as_non_fatal(self, chain, deriver, root, accounts):
        source = accounts[2]
        chain.balances[source.address] = 1_000
        submitter = make_submitter(chain, deriver)
        action = PendingAction(
            source=source, destination=root, amount=1_000, reason=ActionReason.RECLAIM
        )

        outcome = await submitter.dispatch(action)

        assert isinstance(outcome.error, ReclaimSkippedError)
        assert not outcome.fatal
        assert outcome.record is None
