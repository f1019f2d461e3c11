"""
hdfund - keep a set of HD-derived accounts funded from a root account.

Provides derivation, balance observation, funding/reclaim planning and
nonce-safe transaction submission.
"""

__version__ = "0.1.0"

from hdfund.engine import DistributionEngine, EngineState, RunReport
from hdfund.errors import (
    ConfirmationTimeoutError,
    DerivationError,
    FatalSubmissionError,
    HDFundError,
    ObservationError,
    ReclaimSkippedError,
    RetryableSubmissionError,
    SubmissionError,
)
from hdfund.models import (
    Account,
    ActionReason,
    BalanceSnapshot,
    FundingPolicy,
    NonceLease,
    Outcome,
    PendingAction,
    TransactionRecord,
)
from hdfund.nonce import NonceSequencer, SequencerRegistry
from hdfund.observer import BalanceObserver
from hdfund.planner import FundingPlanner
from hdfund.reclaim import ReclaimCoordinator, ReclaimPlan
from hdfund.retry import RetryPolicy
from hdfund.submitter import TransactionSubmitter
from hdfund.wallet.deriver import AccountDeriver

__all__ = [
    "Account",
    "AccountDeriver",
    "ActionReason",
    "BalanceObserver",
    "BalanceSnapshot",
    "ConfirmationTimeoutError",
    "DerivationError",
    "DistributionEngine",
    "EngineState",
    "FatalSubmissionError",
    "FundingPlanner",
    "FundingPolicy",
    "HDFundError",
    "NonceLease",
    "NonceSequencer",
    "ObservationError",
    "Outcome",
    "PendingAction",
    "ReclaimCoordinator",
    "ReclaimPlan",
    "ReclaimSkippedError",
    "RetryPolicy",
    "RetryableSubmissionError",
    "SequencerRegistry",
    "SubmissionError",
    "TransactionRecord",
    "TransactionSubmitter",
]
