"""Run-level values for the matching engine: configuration, plans, outcomes and metrics."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from screening_match.config.settings import Settings


class MatchingConfigOverrides(BaseModel):
    """Caller-supplied overrides for a single run. Unset fields keep the defaults."""
    model_config = ConfigDict(extra="forbid")

    patients_per_screening_type: Optional[int] = Field(default=None, ge=1, le=100)
    max_total_patients: Optional[int] = Field(default=None, ge=1, le=1000)
    enable_parallel_processing: Optional[bool] = None
    max_concurrent_screening_types: Optional[int] = Field(default=None, ge=1, le=10)
    enable_demographic_targeting: Optional[bool] = None
    enable_geographic_targeting: Optional[bool] = None
    allocation_expiry_days: Optional[int] = Field(default=None, ge=1, le=365)


class MatchingConfig(BaseModel):
    """Effective configuration of one matching run."""
    patients_per_screening_type: int = Field(default=50, ge=1)
    max_total_patients: int = Field(default=500, ge=1)
    enable_parallel_processing: bool = False
    max_concurrent_screening_types: int = Field(default=5, ge=1)
    enable_demographic_targeting: bool = True
    enable_geographic_targeting: bool = True
    allocation_expiry_days: int = Field(default=30, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchingConfig":
        return cls(
            patients_per_screening_type=settings.waitlist_batch_size,
            max_total_patients=settings.waitlist_max_total,
            enable_parallel_processing=settings.waitlist_parallel,
            max_concurrent_screening_types=settings.waitlist_concurrent,
            enable_demographic_targeting=settings.waitlist_demographic_targeting,
            enable_geographic_targeting=settings.waitlist_geographic_targeting,
            allocation_expiry_days=settings.waitlist_expiry_days,
        )

    def merged(
        self,
        overrides: Union[MatchingConfigOverrides, Mapping[str, Any], None] = None,
    ) -> "MatchingConfig":
        """Return a copy with overrides applied. Raises pydantic.ValidationError on bad input."""
        if overrides is None:
            return self.model_copy()
        if not isinstance(overrides, MatchingConfigOverrides):
            overrides = MatchingConfigOverrides.model_validate(dict(overrides))
        return self.model_copy(update=overrides.model_dump(exclude_none=True))


class AllocationPlan(BaseModel):
    """One staged match: fund decrement, waitlist flip and allocation insert."""
    waitlist_id: str
    patient_id: str
    campaign_id: str
    donor_id: str
    campaign_title: str
    screening_type_id: str
    screening_type_name: str
    amount: float = Field(..., gt=0)
    is_general_pool: bool = False


class ScreeningTypeBreakdown(BaseModel):
    name: str
    patients_processed: int = 0
    matches_created: int = 0
    funds_used: float = 0.0
    campaigns_involved: List[str] = Field(default_factory=list)


class ScreeningTypeOutcome(BaseModel):
    """What processing one screening-type group produced."""
    screening_type_id: str
    screening_type_name: str
    patients_found: int = 0
    patients_evaluated: int = 0
    patients_processed: int = 0
    matches_created: int = 0
    funds_used: float = 0.0
    campaigns_involved: List[str] = Field(default_factory=list)
    skipped_due_to_limits: int = 0
    skipped_due_to_no_funding: int = 0
    skipped_due_to_existing_match: int = 0
    general_pool_usage_count: int = 0
    general_pool_funds_used: float = 0.0
    targeting_matches: int = 0
    targeting_mismatches: int = 0
    transaction_committed: bool = False
    transaction_failed: bool = False
    notifications_sent: int = 0
    processing_time_ms: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)

    def breakdown(self) -> ScreeningTypeBreakdown:
        return ScreeningTypeBreakdown(
            name=self.screening_type_name,
            patients_processed=self.patients_processed,
            matches_created=self.matches_created,
            funds_used=self.funds_used,
            campaigns_involved=list(self.campaigns_involved),
        )


class ExpiryOutcome(BaseModel):
    """Result of one expiry pass."""
    expired_count: int = 0
    funds_returned: float = 0.0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class RunMetrics(BaseModel):
    """Counters for one run, built by merging component outcomes."""
    screening_types_processed: int = 0
    screening_types_skipped: int = 0
    patients_evaluated: int = 0
    successful_matches: int = 0
    skipped_due_to_limits: int = 0
    skipped_due_to_no_funding: int = 0
    skipped_due_to_existing_match: int = 0
    processing_time_ms: int = 0
    total_funds_allocated: float = 0.0
    campaigns_used: Set[str] = Field(default_factory=set)
    general_pool_usage_count: int = 0
    general_pool_funds_used: float = 0.0
    notifications_sent: int = 0
    transaction_batches: int = 0
    failed_transaction_batches: int = 0
    targeting_matches: int = 0
    targeting_mismatches: int = 0
    expired_allocations: int = 0
    funds_returned_from_expiry: float = 0.0
    cancelled: bool = False
    screening_type_breakdown: Dict[str, ScreeningTypeBreakdown] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)

    def merge_expiry(self, outcome: ExpiryOutcome) -> None:
        self.expired_allocations += outcome.expired_count
        self.funds_returned_from_expiry += outcome.funds_returned
        self.warnings.extend(outcome.errors)

    def merge_screening_type(self, outcome: ScreeningTypeOutcome) -> None:
        self.screening_types_processed += 1
        self.patients_evaluated += outcome.patients_evaluated
        self.successful_matches += outcome.matches_created
        self.skipped_due_to_limits += outcome.skipped_due_to_limits
        self.skipped_due_to_no_funding += outcome.skipped_due_to_no_funding
        self.skipped_due_to_existing_match += outcome.skipped_due_to_existing_match
        self.total_funds_allocated += outcome.funds_used
        self.campaigns_used.update(outcome.campaigns_involved)
        self.general_pool_usage_count += outcome.general_pool_usage_count
        self.general_pool_funds_used += outcome.general_pool_funds_used
        self.notifications_sent += outcome.notifications_sent
        self.targeting_matches += outcome.targeting_matches
        self.targeting_mismatches += outcome.targeting_mismatches
        if outcome.transaction_committed:
            self.transaction_batches += 1
        if outcome.transaction_failed:
            self.failed_transaction_batches += 1
        self.errors.extend(outcome.errors)
        self.warnings.extend(outcome.warnings)
        self.screening_type_breakdown[outcome.screening_type_id] = outcome.breakdown()

    def record_error(self, error: str, **context: Any) -> None:
        self.errors.append({
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **context,
        })

    def summary(self) -> Dict[str, Any]:
        """Headline numbers returned to the caller and stored on the execution."""
        return {
            "screening_types_processed": self.screening_types_processed,
            "patients_evaluated": self.patients_evaluated,
            "successful_matches": self.successful_matches,
            "total_funds_allocated": self.total_funds_allocated,
            "funds_returned_from_expiry": self.funds_returned_from_expiry,
            "expired_allocations": self.expired_allocations,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "cancelled": self.cancelled,
        }


class RunResult(BaseModel):
    """Structured result of a matching run. Never replaced by an exception."""
    success: bool
    execution_ref: Optional[str] = None
    execution_id: Optional[str] = None
    metrics: Optional[RunMetrics] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
