"""
Exception taxonomy for the funding engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hdfund.models import PendingAction


class HDFundError(Exception):
    """Base class for funding engine errors."""


class DerivationError(HDFundError):
    """Malformed derivation path template or account index out of range."""


class ObservationError(HDFundError):
    """A balance read failed; the account's snapshot is Unknown for this cycle."""

    def __init__(self, index: int, reason: str):
        super().__init__(f"Balance read failed for account {index}: {reason}")
        self.index = index
        self.reason = reason


class SubmissionError(HDFundError):
    """A planned action could not be submitted."""

    def __init__(self, action: PendingAction, reason: str):
        super().__init__(
            f"{action.reason.value} of {action.amount} to account "
            f"{action.destination.index} failed: {reason}"
        )
        self.action = action
        self.reason = reason


class RetryableSubmissionError(SubmissionError):
    """Transient failure (nonce mismatch, RPC error); the action is re-planned later."""


class FatalSubmissionError(SubmissionError):
    """Failure the operator must resolve (insufficient funds, invalid destination)."""


class ReclaimSkippedError(SubmissionError):
    """The source no longer holds enough above its reserve to pay the reclaim fee."""

    def __init__(self, action: PendingAction, reason: str, balance: int | None = None):
        super().__init__(action, reason)
        self.balance = balance


class ConfirmationTimeoutError(HDFundError):
    """Confirmation was not observed within the attempt budget."""

    def __init__(self, tx_id: str, attempts: int):
        super().__init__(f"Transaction {tx_id} not confirmed after {attempts} checks")
        self.tx_id = tx_id
        self.attempts = attempts
