"""
Test configuration and an in-memory chain for funding engine tests.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest
import rlp
from eth_account import Account as EthAccount
from eth_utils import keccak, to_checksum_address

from hdfund.chain.base import (
    ChainClient,
    ChainTransportError,
    FeeQuote,
    InsufficientFundsError,
    NonceMismatchError,
    TxStatus,
)
from hdfund.models import FundingPolicy
from hdfund.retry import RetryPolicy
from hdfund.wallet.deriver import AccountDeriver

GAS_PRICE = 1
GAS_LIMIT = 21_000
FEE = GAS_PRICE * GAS_LIMIT
CHAIN_ID = 1337

NO_WAIT = RetryPolicy(attempts=3, base_delay=0.0)


@dataclass
class SentTx:
    tx_id: str
    sender: str
    to: str
    value: int
    nonce: int


class FakeChainClient(ChainClient):
    """
    In-memory chain: enforces nonces and balances on submission.

    Transactions are applied on submit; their status is CONFIRMED unless
    auto_confirm is off, in which case they stay PENDING until confirm_all().
    """

    def __init__(self, balances: dict[str, int] | None = None, gas_price: int = GAS_PRICE):
        self.balances: dict[str, int] = dict(balances or {})
        self.nonces: dict[str, int] = {}
        self.gas_price = gas_price
        self.sent: list[SentTx] = []
        self.statuses: dict[str, TxStatus] = {}
        self.auto_confirm = True
        self.failing_balances: set[str] = set()
        self.submit_errors: list[Exception] = []
        self.fee_quotes: list[int] = []  # gas prices returned before gas_price
        self.nonce_reads = 0
        self.closed = False

    async def get_balance(self, address: str) -> int:
        if address in self.failing_balances:
            raise ChainTransportError("connection refused")
        return self.balances.get(address, 0)

    async def get_nonce(self, address: str) -> int:
        self.nonce_reads += 1
        return self.nonces.get(address, 0)

    async def estimate_fee(self) -> FeeQuote:
        gas_price = self.fee_quotes.pop(0) if self.fee_quotes else self.gas_price
        return FeeQuote(gas_price=gas_price, gas_limit=GAS_LIMIT)

    async def submit_transaction(self, raw_tx: str) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)

        raw = bytes.fromhex(raw_tx.removeprefix("0x"))
        fields = rlp.decode(raw)
        nonce, gas_price, gas, value = (int.from_bytes(fields[i], "big") for i in (0, 1, 2, 4))
        to_address = to_checksum_address(fields[3])
        sender = EthAccount.recover_transaction(raw_tx)
        cost = value + gas * gas_price

        expected = self.nonces.get(sender, 0)
        if nonce < expected:
            raise NonceMismatchError("RPC error -32000: nonce too low")
        if nonce > expected:
            raise NonceMismatchError("RPC error -32000: nonce too high")
        if self.balances.get(sender, 0) < cost:
            raise InsufficientFundsError("RPC error -32000: insufficient funds for gas * price")

        self.nonces[sender] = expected + 1
        self.balances[sender] = self.balances.get(sender, 0) - cost
        self.balances[to_address] = self.balances.get(to_address, 0) + value

        tx_id = "0x" + keccak(raw).hex()
        self.sent.append(SentTx(tx_id, sender, to_address, value, nonce))
        self.statuses[tx_id] = TxStatus.CONFIRMED if self.auto_confirm else TxStatus.PENDING
        return tx_id

    async def get_transaction_status(self, tx_id: str) -> TxStatus:
        return self.statuses.get(tx_id, TxStatus.UNKNOWN)

    async def get_chain_id(self) -> int:
        return CHAIN_ID

    async def close(self) -> None:
        self.closed = True

    def confirm_all(self) -> None:
        for tx_id, status in self.statuses.items():
            if status == TxStatus.PENDING:
                self.statuses[tx_id] = TxStatus.CONFIRMED

    def sent_to(self, address: str) -> list[SentTx]:
        return [tx for tx in self.sent if tx.to == address]


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def deriver(sample_mnemonic: str) -> AccountDeriver:
    return AccountDeriver.from_mnemonic(sample_mnemonic, max_accounts=50)


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def policy() -> FundingPolicy:
    return FundingPolicy(threshold=100, target=500, reserve=50, root_index=0)
