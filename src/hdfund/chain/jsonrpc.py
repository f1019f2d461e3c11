"""
Ethereum-style JSON-RPC chain client.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
from loguru import logger

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

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Gas used by a plain value transfer
TRANSFER_GAS_LIMIT = 21_000

# Environment variable to enable logging of raw RPC payloads
# WARNING: Enabling this will log signed transactions
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")

_NONCE_MARKERS = ("nonce too low", "nonce too high", "invalid nonce", "already known")
_FUNDS_MARKERS = ("insufficient funds", "insufficient balance")
_ADDRESS_MARKERS = ("invalid address", "invalid recipient", "bad address")


def _hex_int(value: Any, what: str) -> int:
    """Decode a hex quantity from a node reply; malformed values are transport errors."""
    try:
        return int(value, 16)
    except (TypeError, ValueError) as e:
        raise ChainTransportError(f"{what} returned malformed quantity {value!r}") from e


def classify_rpc_error(code: Any, message: str) -> ChainClientError:
    """Map a node error message onto the chain client error classes."""
    text = f"RPC error {code}: {message}"
    lowered = message.lower()
    if any(marker in lowered for marker in _NONCE_MARKERS):
        return NonceMismatchError(text)
    if any(marker in lowered for marker in _FUNDS_MARKERS):
        return InsufficientFundsError(text)
    if any(marker in lowered for marker in _ADDRESS_MARKERS):
        return InvalidAddressError(text)
    return ChainClientError(text)


class JsonRpcChainClient(ChainClient):
    """
    Chain client over Ethereum-compatible JSON-RPC.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:8545",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        gas_limit: int = TRANSFER_GAS_LIMIT,
        confirmations: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.gas_limit = gas_limit
        self.confirmations = confirmations
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._request_id = 0
        self._chain_id: int | None = None

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            ChainTimeoutError: On timeout
            ChainTransportError: On connection or HTTP errors
            ChainClientError (or a subclass): On RPC errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        if SENSITIVE_LOGGING:
            logger.debug(f"RPC request: {payload}")

        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise ChainTimeoutError(f"{method} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise ChainTransportError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise ChainTransportError(f"{method} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise ChainTransportError(f"{method} returned a non-object response")

        if "error" in data and data["error"]:
            error_info = data["error"]
            if isinstance(error_info, dict):
                raise classify_rpc_error(
                    error_info.get("code", "unknown"), str(error_info.get("message", error_info))
                )
            raise classify_rpc_error("unknown", str(error_info))

        return data.get("result")

    async def get_balance(self, address: str) -> int:
        result = await self._rpc_call("eth_getBalance", [address, "latest"])
        return _hex_int(result, "eth_getBalance")

    async def get_nonce(self, address: str) -> int:
        result = await self._rpc_call("eth_getTransactionCount", [address, "pending"])
        return _hex_int(result, "eth_getTransactionCount")

    async def estimate_fee(self) -> FeeQuote:
        result = await self._rpc_call("eth_gasPrice")
        return FeeQuote(gas_price=_hex_int(result, "eth_gasPrice"), gas_limit=self.gas_limit)

    async def submit_transaction(self, raw_tx: str) -> str:
        if not raw_tx.startswith("0x"):
            raw_tx = "0x" + raw_tx
        tx_id = await self._rpc_call("eth_sendRawTransaction", [raw_tx])
        if not isinstance(tx_id, str):
            raise ChainTransportError(f"eth_sendRawTransaction returned {tx_id!r}")
        logger.debug(f"Submitted transaction: {tx_id}")
        return tx_id

    async def get_transaction_status(self, tx_id: str) -> TxStatus:
        receipt = await self._rpc_call("eth_getTransactionReceipt", [tx_id])
        if receipt is None:
            tx = await self._rpc_call("eth_getTransactionByHash", [tx_id])
            return TxStatus.UNKNOWN if tx is None else TxStatus.PENDING
        if not isinstance(receipt, dict):
            raise ChainTransportError(f"eth_getTransactionReceipt returned {receipt!r}")

        if _hex_int(receipt.get("status", "0x1"), "receipt status") == 0:
            return TxStatus.FAILED

        if self.confirmations > 1:
            tip = _hex_int(await self._rpc_call("eth_blockNumber"), "eth_blockNumber")
            mined = _hex_int(receipt.get("blockNumber"), "receipt blockNumber")
            depth = tip - mined + 1
            if depth < self.confirmations:
                return TxStatus.PENDING

        return TxStatus.CONFIRMED

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = _hex_int(await self._rpc_call("eth_chainId"), "eth_chainId")
        return self._chain_id

    async def close(self) -> None:
        await self.client.aclose()
