"""
Chain client implementations.

Available clients:
- JsonRpcChainClient: Ethereum-compatible JSON-RPC node over HTTP
"""

from hdfund.chain.base import (
    ChainClient,
    ChainClientError,
    ChainTimeoutError,
    ChainTransportError,
    FeeQuote,
    InsufficientFundsError,
    InvalidAddressError,
    NonceMismatchError,
    TxStatus,
)
from hdfund.chain.jsonrpc import JsonRpcChainClient

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainTimeoutError",
    "ChainTransportError",
    "FeeQuote",
    "InsufficientFundsError",
    "InvalidAddressError",
    "JsonRpcChainClient",
    "NonceMismatchError",
    "TxStatus",
]
