"""
Base chain client interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class ChainClientError(Exception):
    """Base class for errors reported by a chain client."""


class NonceMismatchError(ChainClientError):
    """Node rejected a transaction because its nonce is too low or too high."""


class InsufficientFundsError(ChainClientError):
    """Sender cannot cover value plus fee."""


class InvalidAddressError(ChainClientError):
    """Destination address is malformed."""


class ChainTransportError(ChainClientError):
    """Connection or protocol failure talking to the node."""


class ChainTimeoutError(ChainTransportError):
    """A call did not complete within its timeout."""


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"  # node has never seen it, or dropped it


@dataclass(frozen=True)
class FeeQuote:
    """Fee parameters for a plain value transfer."""

    gas_price: int
    gas_limit: int

    @property
    def total(self) -> int:
        return self.gas_price * self.gas_limit


class ChainClient(ABC):
    """
    Abstract chain client.
    Amounts are integers in the asset's smallest unit.
    """

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Get balance for an address"""

    @abstractmethod
    async def get_nonce(self, address: str) -> int:
        """Get the next nonce the chain expects from an address (pending included)"""

    @abstractmethod
    async def estimate_fee(self) -> FeeQuote:
        """Estimate the fee of a plain value transfer"""

    @abstractmethod
    async def submit_transaction(self, raw_tx: str) -> str:
        """Submit a signed transaction (hex), returns transaction id"""

    @abstractmethod
    async def get_transaction_status(self, tx_id: str) -> TxStatus:
        """Get inclusion status of a transaction"""

    @abstractmethod
    async def get_chain_id(self) -> int:
        """Get the chain id used for replay protection"""

    async def close(self) -> None:
        """Close client connection"""
        pass
