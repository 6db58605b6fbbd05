"""Run orchestrator — one invocation of the waitlist matching batch job.

Phases:
1. Create the RUNNING execution record (abort if this fails)
2. Reclaim expired allocations
3. Load all PENDING waitlist entries and the general pool in one pass
4. Process each screening-type group: eligibility, campaign selection,
   one batch transaction, notifications
5. Finalize the execution record as COMPLETED (or FAILED)

Selection for a group is synchronous against run-scoped ledgers, so groups
running concurrently never plan against funds another group already promised.
"""
import asyncio
import secrets
import string
import time
from collections import OrderedDict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from screening_match.config.logging_config import bind_execution_ref, get_logger, unbind_execution_ref
from screening_match.config.settings import Settings, get_settings
from screening_match.matching.audit import ExecutionAuditor
from screening_match.matching.committer import AllocationCommitter
from screening_match.matching.eligibility import select_batch
from screening_match.matching.exceptions import AllocationCommitError, WaitlistLoadError
from screening_match.matching.expiry import ExpiryReclaimer
from screening_match.matching.ledger import ExposureTracker, FundLedger
from screening_match.matching.selector import select_campaign
from screening_match.models.matching import (
    AllocationPlan,
    MatchingConfig,
    MatchingConfigOverrides,
    RunMetrics,
    RunResult,
    ScreeningTypeOutcome,
)
from screening_match.models.records import Campaign, WaitlistCandidate
from screening_match.notifications.dispatcher import NotificationDispatcher, StoredNotificationDispatcher
from screening_match.storage.repository import MatchingRepository

logger = get_logger(__name__)

_REF_ALPHABET = string.ascii_uppercase + string.digits


def generate_execution_reference(now: Optional[datetime] = None) -> str:
    """EXEC_YYYYMMDDHHMMSS_XXXXXX, UTC."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"EXEC_{now.strftime('%Y%m%d%H%M%S')}_{suffix}"


class _RunContext:
    """Mutable state shared by the groups of one run."""

    def __init__(
        self,
        execution_id: str,
        config: MatchingConfig,
        auditor: ExecutionAuditor,
        campaigns: Dict[str, Campaign],
        general_pool: Optional[Campaign],
        exposure_limit: int,
        today: date,
    ):
        self.execution_id = execution_id
        self.config = config
        self.auditor = auditor
        self.campaigns = campaigns
        self.general_pool = general_pool
        self.ledger = FundLedger(campaigns.values())
        if general_pool is not None:
            self.ledger.track(general_pool)
        self.exposure = ExposureTracker(limit=exposure_limit)
        self.remaining_patients = config.max_total_patients
        self.today = today


class MatchingOrchestrator:
    """Runs the matching job end to end and always returns a RunResult."""

    def __init__(
        self,
        repository: Optional[MatchingRepository] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or MatchingRepository()
        self.dispatcher = dispatcher or StoredNotificationDispatcher()
        self.committer = AllocationCommitter(self.repository, self.dispatcher)
        self.reclaimer = ExpiryReclaimer(self.repository, self.dispatcher)

    def default_config(self) -> MatchingConfig:
        return MatchingConfig.from_settings(self.settings)

    async def run(
        self,
        overrides: Union[MatchingConfigOverrides, Mapping[str, Any], None] = None,
        cancel_event: Optional[asyncio.Event] = None,
        deadline_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RunResult:
        """
        Execute one matching run.

        Args:
            overrides: Per-run configuration overrides
            cancel_event: When set, no further screening-type groups are started
            deadline_seconds: Same as cancellation once this many seconds have elapsed
            now: Reference time for expiry and age calculations

        Returns:
            RunResult; success is False only when the run could not be tracked
            or its waitlist could not be loaded
        """
        try:
            config = self.default_config().merged(overrides)
        except ValidationError as e:
            logger.warning("Rejected matching overrides", error=str(e))
            return RunResult(success=False, error=f"Invalid configuration: {e}")

        now = now or datetime.now(timezone.utc)
        if deadline_seconds is None and self.settings.waitlist_run_timeout_seconds > 0:
            deadline_seconds = self.settings.waitlist_run_timeout_seconds
        started = time.monotonic()
        deadline = started + deadline_seconds if deadline_seconds else None

        execution_ref = generate_execution_reference(now)
        bind_execution_ref(execution_ref)
        try:
            return await self._run(config, execution_ref, started, deadline, cancel_event, now)
        finally:
            unbind_execution_ref()

    async def _run(
        self,
        config: MatchingConfig,
        execution_ref: str,
        started: float,
        deadline: Optional[float],
        cancel_event: Optional[asyncio.Event],
        now: datetime,
    ) -> RunResult:
        logger.info("Starting matching run", config=config.model_dump())

        try:
            execution_id = await self.repository.create_execution(execution_ref, config.model_dump())
        except Exception as e:
            logger.error("Failed to create execution record", error=str(e))
            return RunResult(
                success=False,
                execution_ref=execution_ref,
                error=f"Failed to create execution record: {e}",
            )

        metrics = RunMetrics()
        auditor = ExecutionAuditor(self.repository, execution_id)
        auditor.info("Matching run started", config=config.model_dump())

        try:
            expiry = await self.reclaimer.reclaim(config.allocation_expiry_days, auditor, now)
            metrics.merge_expiry(expiry)

            try:
                snapshot = await self.repository.load_pending_waitlist()
                general_pool = await self.repository.load_general_pool(self.settings.general_pool_campaign_id)
            except SQLAlchemyError as e:
                raise WaitlistLoadError(f"Failed to load pending waitlist: {e}") from e

            for rejected in snapshot.rejected_rows:
                metrics.warnings.append(rejected)
                auditor.warning(rejected["error"], **{k: v for k, v in rejected.items() if k != "error"})

            if general_pool is None:
                pool_id = self.settings.general_pool_campaign_id
                logger.warning("General pool campaign unavailable", campaign_id=pool_id)
                metrics.warnings.append({"error": "General pool campaign unavailable", "campaign_id": pool_id})
                auditor.warning("General pool campaign unavailable", campaign_id=pool_id)

            groups = self._group_by_screening_type(snapshot.candidates)
            logger.info(
                "Processing screening types",
                screening_types=len(groups),
                entries=len(snapshot.candidates),
                parallel=config.enable_parallel_processing,
            )

            ctx = _RunContext(
                execution_id=execution_id,
                config=config,
                auditor=auditor,
                campaigns=snapshot.campaigns,
                general_pool=general_pool,
                exposure_limit=self.settings.max_active_allocations_per_patient,
                today=now.date(),
            )
            await self._process_groups(ctx, groups, metrics, cancel_event, deadline)

            metrics.processing_time_ms = int((time.monotonic() - started) * 1000)
            auditor.info(
                "Matching run completed",
                matches=metrics.successful_matches,
                funds_allocated=metrics.total_funds_allocated,
                cancelled=metrics.cancelled,
            )
            await auditor.flush()
            await self.repository.complete_execution(execution_id, metrics)

        except Exception as e:
            metrics.processing_time_ms = int((time.monotonic() - started) * 1000)
            metrics.record_error(str(e), phase="run")
            logger.error("Matching run failed", error=str(e), error_type=type(e).__name__)
            auditor.error("Matching run failed", error=str(e))
            await auditor.flush()
            try:
                await self.repository.fail_execution(execution_id, metrics.errors, metrics.processing_time_ms)
            except Exception as track_error:
                logger.error("Failed to mark execution as failed", error=str(track_error))
            return RunResult(
                success=False,
                execution_ref=execution_ref,
                execution_id=execution_id,
                metrics=metrics,
                summary=metrics.summary(),
                error=str(e),
            )

        logger.info(
            "Matching run completed",
            matches=metrics.successful_matches,
            funds_allocated=metrics.total_funds_allocated,
            expired=metrics.expired_allocations,
            errors=len(metrics.errors),
            duration_ms=metrics.processing_time_ms,
        )
        return RunResult(
            success=True,
            execution_ref=execution_ref,
            execution_id=execution_id,
            metrics=metrics,
            summary=metrics.summary(),
        )

    @staticmethod
    def _group_by_screening_type(
        candidates: Sequence[WaitlistCandidate],
    ) -> "OrderedDict[str, List[WaitlistCandidate]]":
        groups: "OrderedDict[str, List[WaitlistCandidate]]" = OrderedDict()
        for candidate in candidates:
            groups.setdefault(candidate.screening_type_id, []).append(candidate)
        return groups

    @staticmethod
    def _stopped(cancel_event: Optional[asyncio.Event], deadline: Optional[float]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    async def _process_groups(
        self,
        ctx: _RunContext,
        groups: "OrderedDict[str, List[WaitlistCandidate]]",
        metrics: RunMetrics,
        cancel_event: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> None:
        items = list(groups.values())
        chunk_size = 1
        if ctx.config.enable_parallel_processing and len(items) > 1:
            chunk_size = ctx.config.max_concurrent_screening_types

        for start in range(0, len(items), chunk_size):
            if self._stopped(cancel_event, deadline):
                metrics.cancelled = True
                metrics.screening_types_skipped += len(items) - start
                logger.warning("Matching run stopped early", remaining_screening_types=len(items) - start)
                ctx.auditor.warning(
                    "Run cancelled before all screening types were processed",
                    remaining_screening_types=len(items) - start,
                )
                return

            chunk = items[start:start + chunk_size]
            if len(chunk) == 1:
                outcomes = [await self._run_group(ctx, chunk[0])]
            else:
                outcomes = await asyncio.gather(*(self._run_group(ctx, group) for group in chunk))
            for outcome in outcomes:
                metrics.merge_screening_type(outcome)

    async def _run_group(self, ctx: _RunContext, candidates: List[WaitlistCandidate]) -> ScreeningTypeOutcome:
        """Process one group; any failure is recorded on the outcome, never raised."""
        screening_type = candidates[0].screening_type
        outcome = ScreeningTypeOutcome(
            screening_type_id=screening_type.id,
            screening_type_name=screening_type.name,
            patients_found=len(candidates),
        )
        started = time.monotonic()
        try:
            await self._process_group(ctx, candidates, outcome)
        except Exception as e:
            logger.error(
                "Screening type processing failed",
                screening_type_id=screening_type.id,
                error=str(e),
            )
            outcome.errors.append({
                "error": str(e),
                "screening_type_id": screening_type.id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
            ctx.auditor.error(
                f"Failed to process {screening_type.name}",
                screening_type_id=screening_type.id,
                error=str(e),
            )
        outcome.processing_time_ms = int((time.monotonic() - started) * 1000)
        await ctx.auditor.flush()
        return outcome

    async def _process_group(
        self,
        ctx: _RunContext,
        candidates: List[WaitlistCandidate],
        outcome: ScreeningTypeOutcome,
    ) -> None:
        screening_type = candidates[0].screening_type
        group_started = time.monotonic()
        result_id = await self.repository.create_screening_result(
            ctx.execution_id, screening_type.id, screening_type.name, len(candidates)
        )

        plans = self._plan_group(ctx, candidates, outcome)

        if plans:
            try:
                allocation_ids = await self.committer.commit(ctx.execution_id, plans)
            except AllocationCommitError as e:
                ctx.ledger.release_plans(plans)
                ctx.exposure.release_plans(plans)
                outcome.transaction_failed = True
                outcome.errors.append({
                    "error": f"Transaction failed: {e}",
                    "screening_type_id": screening_type.id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                })
                ctx.auditor.error(
                    f"Batch transaction failed for {screening_type.name}",
                    screening_type_id=screening_type.id,
                    planned_matches=len(plans),
                    error=str(e),
                )
            else:
                self._record_matches(ctx, outcome, plans, allocation_ids)
                sent, failures = await self.committer.notify(plans, allocation_ids)
                outcome.notifications_sent += sent
                outcome.warnings.extend(failures)
                for failure in failures:
                    ctx.auditor.warning(
                        failure["warning"],
                        patient_id=failure["recipient_id"],
                        waitlist_id=failure["waitlist_id"],
                    )

        outcome.processing_time_ms = int((time.monotonic() - group_started) * 1000)
        try:
            await self.repository.update_screening_result(result_id, outcome)
        except SQLAlchemyError as e:
            logger.warning("Failed to update screening type result", result_id=result_id, error=str(e))
            outcome.warnings.append({
                "warning": f"Failed to update screening type result: {e}",
                "screening_type_id": screening_type.id,
            })

        logger.info(
            "Screening type processed",
            screening_type_id=screening_type.id,
            matches=outcome.matches_created,
            funds_used=outcome.funds_used,
            skipped_no_funding=outcome.skipped_due_to_no_funding,
            transaction_failed=outcome.transaction_failed,
        )

    def _plan_group(
        self,
        ctx: _RunContext,
        candidates: List[WaitlistCandidate],
        outcome: ScreeningTypeOutcome,
    ) -> List[AllocationPlan]:
        """Select patients and campaigns for one group. Never awaits."""
        config = ctx.config
        screening_type = candidates[0].screening_type
        limit = min(config.patients_per_screening_type, ctx.remaining_patients)
        eligibility = select_batch(candidates, limit, ctx.exposure)
        ctx.remaining_patients -= len(eligibility.selected)

        outcome.patients_processed = len(eligibility.selected)
        outcome.skipped_due_to_limits = len(eligibility.skipped_due_to_limits)
        outcome.skipped_due_to_existing_match = len(eligibility.skipped_due_to_existing_match)
        outcome.patients_evaluated = (
            outcome.patients_processed
            + outcome.skipped_due_to_limits
            + outcome.skipped_due_to_existing_match
        )

        for entry in eligibility.skipped_due_to_limits:
            ctx.auditor.warning(
                "Patient skipped: active allocation limit reached",
                patient_id=entry.patient_id,
                waitlist_id=entry.waitlist_id,
                screening_type_id=screening_type.id,
            )
        for entry in eligibility.skipped_due_to_existing_match:
            ctx.auditor.info(
                "Patient skipped: already matched for screening type",
                patient_id=entry.patient_id,
                waitlist_id=entry.waitlist_id,
                screening_type_id=screening_type.id,
            )

        plans: List[AllocationPlan] = []
        for candidate in eligibility.selected:
            try:
                selection = select_campaign(
                    candidate,
                    [ctx.campaigns[cid] for cid in candidate.campaign_ids if cid in ctx.campaigns],
                    ctx.general_pool,
                    config,
                    ctx.ledger,
                    ctx.today,
                )
                outcome.targeting_matches += selection.targeting_matches
                outcome.targeting_mismatches += selection.targeting_mismatches

                if selection.campaign is None:
                    outcome.skipped_due_to_no_funding += 1
                    ctx.auditor.warning(
                        "No funding available for patient",
                        patient_id=candidate.patient_id,
                        waitlist_id=candidate.waitlist_id,
                        screening_type_id=screening_type.id,
                        price=screening_type.agreed_price,
                    )
                    continue

                campaign = selection.campaign
                plan = AllocationPlan(
                    waitlist_id=candidate.waitlist_id,
                    patient_id=candidate.patient_id,
                    campaign_id=campaign.id,
                    donor_id=campaign.donor_id,
                    campaign_title=campaign.title,
                    screening_type_id=screening_type.id,
                    screening_type_name=screening_type.name,
                    amount=screening_type.agreed_price,
                    is_general_pool=selection.is_general_pool,
                )
                ctx.ledger.reserve(campaign.id, plan.amount)
                ctx.exposure.add(candidate.patient_id)
                plans.append(plan)
            except Exception as e:
                logger.error("Failed to match patient", patient_id=candidate.patient_id, error=str(e))
                outcome.errors.append({
                    "error": str(e),
                    "patient_id": candidate.patient_id,
                    "waitlist_id": candidate.waitlist_id,
                    "screening_type_id": screening_type.id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                })
                ctx.auditor.error(
                    "Failed to match patient",
                    patient_id=candidate.patient_id,
                    waitlist_id=candidate.waitlist_id,
                    screening_type_id=screening_type.id,
                    error=str(e),
                )
        return plans

    @staticmethod
    def _record_matches(
        ctx: _RunContext,
        outcome: ScreeningTypeOutcome,
        plans: List[AllocationPlan],
        allocation_ids: List[str],
    ) -> None:
        outcome.transaction_committed = True
        outcome.matches_created = len(plans)
        for plan, allocation_id in zip(plans, allocation_ids):
            outcome.funds_used += plan.amount
            if plan.campaign_id not in outcome.campaigns_involved:
                outcome.campaigns_involved.append(plan.campaign_id)
            if plan.is_general_pool:
                outcome.general_pool_usage_count += 1
                outcome.general_pool_funds_used += plan.amount
            ctx.auditor.info(
                f"Patient matched to {plan.campaign_title}",
                patient_id=plan.patient_id,
                waitlist_id=plan.waitlist_id,
                campaign_id=plan.campaign_id,
                allocation_id=allocation_id,
                screening_type_id=plan.screening_type_id,
                amount=plan.amount,
                general_pool=plan.is_general_pool,
            )


_orchestrator: Optional[MatchingOrchestrator] = None


def get_matching_orchestrator() -> MatchingOrchestrator:
    """Get or create the global matching orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = MatchingOrchestrator()
    return _orchestrator
