"""
Funding engine data models.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hdfund.errors import FatalSubmissionError


@dataclass(frozen=True)
class Account:
    """A derived account. Only AccountDeriver creates these."""

    index: int
    address: str
    path: str


@dataclass(frozen=True)
class BalanceSnapshot:
    """
    Balance of one account as observed in one poll cycle.

    A snapshot whose balance is None is Unknown: the read failed. It still
    carries the last balance successfully observed for the account, if any.
    """

    account: Account
    balance: int | None
    observed_at: float
    last_known: int | None = None
    error: str | None = None

    @property
    def is_unknown(self) -> bool:
        return self.balance is None

    @property
    def best_balance(self) -> int | None:
        """Observed balance, falling back to the last known one."""
        return self.balance if self.balance is not None else self.last_known


class FundingPolicy(BaseModel):
    """Funding thresholds for a process run."""

    model_config = ConfigDict(frozen=True)

    threshold: int = Field(..., ge=0, description="Top up when balance drops below this")
    target: int = Field(..., ge=0, description="Balance to restore to")
    reserve: int = Field(default=0, ge=0, description="Balance left behind on reclaim")
    root_index: int = Field(default=0, ge=0, description="Account funding the others")

    @model_validator(mode="after")
    def check_target(self) -> FundingPolicy:
        if self.target < self.threshold:
            raise ValueError(f"target ({self.target}) must be >= threshold ({self.threshold})")
        return self


class ActionReason(str, Enum):
    FUND = "fund"
    RECLAIM = "reclaim"


@dataclass(frozen=True)
class PendingAction:
    """A transfer of `amount` from source to destination."""

    source: Account
    destination: Account
    amount: int
    reason: ActionReason
    reserve: int = 0  # balance the source must keep (Reclaim)

    @property
    def key(self) -> tuple[str, int, int]:
        """Identity used to keep at most one transaction in flight per action."""
        return (self.reason.value, self.source.index, self.destination.index)

    @property
    def subject(self) -> Account:
        """The non-root account the action is about."""
        return self.destination if self.reason == ActionReason.FUND else self.source


class LeaseState(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


@dataclass
class NonceLease:
    """A nonce value held by one submission until committed or released."""

    address: str
    value: int
    state: LeaseState = LeaseState.RESERVED


class RecordStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    REVERTED = "reverted"


@dataclass
class TransactionRecord:
    """Submission state of one PendingAction."""

    action: PendingAction
    nonce: int
    tx_id: str
    value: int
    fee: int
    status: RecordStatus = RecordStatus.SUBMITTED
    failure: FailureReason | None = None
    detail: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status != RecordStatus.SUBMITTED

    def fail(self, reason: FailureReason, detail: str = "") -> None:
        self.status = RecordStatus.FAILED
        self.failure = reason
        self.detail = detail


@dataclass
class Outcome:
    """Result of executing one PendingAction in a run."""

    action: PendingAction
    record: TransactionRecord | None = None
    error: Exception | None = None
    last_known_balance: int | None = None
    halted: bool = False  # not attempted because the run hit a fatal error

    @property
    def ok(self) -> bool:
        return self.record is not None and self.record.status == RecordStatus.CONFIRMED

    @property
    def fatal(self) -> bool:
        return isinstance(self.error, FatalSubmissionError)

    @property
    def reason(self) -> str:
        if self.halted:
            return "not attempted after fatal error"
        if self.error is not None:
            return str(getattr(self.error, "reason", self.error))
        if self.record is not None and self.record.failure is not None:
            return f"{self.record.failure.value}: {self.record.detail}"
        return ""
