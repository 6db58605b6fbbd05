"""Data models for the screening match service."""
from .enums import (
    WaitlistStatus,
    CampaignStatus,
    Gender,
    ExecutionStatus,
    LogLevel,
    NotificationType,
)
from .records import (
    PatientProfile,
    ActiveAllocation,
    ScreeningType,
    Campaign,
    WaitlistCandidate,
    PendingWaitlistSnapshot,
    ExpirableWaitlist,
)
from .matching import (
    MatchingConfig,
    MatchingConfigOverrides,
    AllocationPlan,
    ScreeningTypeOutcome,
    ExpiryOutcome,
    RunMetrics,
    RunResult,
)

__all__ = [
    "WaitlistStatus",
    "CampaignStatus",
    "Gender",
    "ExecutionStatus",
    "LogLevel",
    "NotificationType",
    "PatientProfile",
    "ActiveAllocation",
    "ScreeningType",
    "Campaign",
    "WaitlistCandidate",
    "PendingWaitlistSnapshot",
    "ExpirableWaitlist",
    "MatchingConfig",
    "MatchingConfigOverrides",
    "AllocationPlan",
    "ScreeningTypeOutcome",
    "ExpiryOutcome",
    "RunMetrics",
    "RunResult",
]
