"""Waitlist matching engine.

The pure decision components (targeting, eligibility, campaign selection) are
exported here; the orchestrator lives in `screening_match.matching.orchestrator`.
"""
from screening_match.matching.exceptions import (
    MatchingError,
    ExecutionTrackingError,
    WaitlistLoadError,
    InsufficientFundsError,
    AllocationCommitError,
    ExpiryError,
    DuplicateWaitlistError,
    ExecutionNotFoundError,
)
from screening_match.matching.eligibility import EligibilityResult, select_batch
from screening_match.matching.ledger import ExposureTracker, FundLedger
from screening_match.matching.selector import CampaignSelection, select_campaign

__all__ = [
    # Exceptions
    "MatchingError",
    "ExecutionTrackingError",
    "WaitlistLoadError",
    "InsufficientFundsError",
    "AllocationCommitError",
    "ExpiryError",
    "DuplicateWaitlistError",
    "ExecutionNotFoundError",
    # Components
    "EligibilityResult",
    "select_batch",
    "ExposureTracker",
    "FundLedger",
    "CampaignSelection",
    "select_campaign",
]
