"""Matching Repository — the only place the matching engine talks SQL.

Rows are converted into the typed records of `screening_match.models` on the
way out; anything that fails validation is reported instead of leaking into
the matching logic. Every multi-statement write runs inside one explicit
transaction (`session.begin()`).
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from screening_match.config.logging_config import get_logger
from screening_match.matching.exceptions import (
    AllocationCommitError,
    DuplicateWaitlistError,
    ExecutionNotFoundError,
    ExecutionTrackingError,
    ExpiryError,
    InsufficientFundsError,
)
from screening_match.models.enums import CampaignStatus, ExecutionStatus, WaitlistStatus
from screening_match.models.matching import AllocationPlan, RunMetrics, ScreeningTypeOutcome
from screening_match.models.records import (
    ActiveAllocation,
    Campaign,
    ExpirableWaitlist,
    PatientProfile,
    PendingWaitlistSnapshot,
    ScreeningType,
    WaitlistCandidate,
)
from screening_match.storage.database import get_session_factory
from screening_match.storage.models import (
    DonationAllocationModel,
    DonationCampaignModel,
    MatchingExecutionLogModel,
    MatchingExecutionModel,
    MatchingScreeningTypeResultModel,
    PatientModel,
    ScreeningTypeModel,
    WaitlistModel,
)

logger = get_logger(__name__)

_GENDERS = {"MALE", "FEMALE"}
_ACTIVE_WAITLIST_STATUSES = (WaitlistStatus.PENDING.value, WaitlistStatus.MATCHED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gender(value: Optional[str]) -> Optional[str]:
    """Normalize stored gender; anything outside MALE/FEMALE (e.g. "ALL") means unset."""
    if not value:
        return None
    value = value.strip().upper()
    return value if value in _GENDERS else None


def _to_campaign(model: DonationCampaignModel) -> Campaign:
    return Campaign(
        id=model.id,
        donor_id=model.donor_id,
        title=model.title or "Untitled Campaign",
        available_amount=model.available_amount or 0.0,
        reserved_amount=model.reserved_amount or 0.0,
        initial_amount=model.initial_amount or 0.0,
        status=model.status,
        target_age_range=model.target_age_range,
        target_age_min=model.target_age_min,
        target_age_max=model.target_age_max,
        target_gender=_gender(model.target_gender),
        target_states=model.target_states,
        target_lgas=model.target_lgas,
        target_income_min=model.target_income_min,
        target_income_max=model.target_income_max,
        screening_type_ids=[st.id for st in model.screening_types],
        created_at=model.created_at,
    )


def _to_patient(model: PatientModel) -> PatientProfile:
    return PatientProfile(
        patient_id=model.id,
        age=model.age,
        date_of_birth=model.date_of_birth,
        gender=_gender(model.gender),
        state=model.state,
        lga=model.lga,
        monthly_income=model.monthly_income,
    )


def _log_row(execution_id: str, entry: Dict[str, Any]) -> MatchingExecutionLogModel:
    context = entry.get("context") or {}
    return MatchingExecutionLogModel(
        execution_id=execution_id,
        level=entry["level"],
        message=entry["message"],
        context=context,
        patient_id=context.get("patient_id"),
        campaign_id=context.get("campaign_id"),
        waitlist_id=context.get("waitlist_id"),
        screening_type_id=context.get("screening_type_id"),
        allocation_id=context.get("allocation_id"),
        timestamp=entry.get("timestamp") or _utcnow(),
    )


class MatchingRepository:
    """Async data access for matching runs, waitlists, campaigns and allocations."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    # ─── Execution audit records ───

    async def create_execution(self, execution_reference: str, batch_config: Dict[str, Any]) -> str:
        """Create the RUNNING audit record for a run."""
        async with self._session_factory() as session:
            async with session.begin():
                execution = MatchingExecutionModel(
                    execution_reference=execution_reference,
                    status=ExecutionStatus.RUNNING.value,
                    batch_config=batch_config,
                    started_at=_utcnow(),
                )
                session.add(execution)
            return execution.id

    async def update_execution(self, execution_id: str, **fields: Any) -> None:
        """Update a RUNNING execution. Finished executions are immutable."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MatchingExecutionModel)
                    .where(
                        MatchingExecutionModel.id == execution_id,
                        MatchingExecutionModel.status == ExecutionStatus.RUNNING.value,
                    )
                    .values(**fields)
                )
                if result.rowcount != 1:
                    raise ExecutionTrackingError(f"Execution {execution_id} is not RUNNING")

    async def complete_execution(self, execution_id: str, metrics: RunMetrics) -> None:
        await self.update_execution(
            execution_id,
            status=ExecutionStatus.COMPLETED.value,
            completed_at=_utcnow(),
            screening_types_processed=metrics.screening_types_processed,
            patients_evaluated=metrics.patients_evaluated,
            successful_matches=metrics.successful_matches,
            skipped_due_to_limits=metrics.skipped_due_to_limits,
            skipped_due_to_no_funding=metrics.skipped_due_to_no_funding,
            skipped_due_to_existing_match=metrics.skipped_due_to_existing_match,
            total_funds_allocated=metrics.total_funds_allocated,
            general_pool_funds_used=metrics.general_pool_funds_used,
            campaigns_used_count=len(metrics.campaigns_used),
            expired_allocations=metrics.expired_allocations,
            funds_returned_from_expiry=metrics.funds_returned_from_expiry,
            notifications_sent=metrics.notifications_sent,
            processing_time_ms=metrics.processing_time_ms,
            cancelled=metrics.cancelled,
            metrics=metrics.model_dump(mode="json", exclude={"errors", "warnings"}),
            errors=metrics.errors or None,
            warnings=metrics.warnings or None,
        )

    async def fail_execution(
        self, execution_id: str, errors: List[Dict[str, Any]], processing_time_ms: int
    ) -> None:
        await self.update_execution(
            execution_id,
            status=ExecutionStatus.FAILED.value,
            completed_at=_utcnow(),
            processing_time_ms=processing_time_ms,
            errors=errors,
        )

    async def create_screening_result(
        self,
        execution_id: str,
        screening_type_id: str,
        screening_type_name: str,
        patients_found: int,
    ) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                row = MatchingScreeningTypeResultModel(
                    execution_id=execution_id,
                    screening_type_id=screening_type_id,
                    screening_type_name=screening_type_name,
                    patients_found=patients_found,
                    processing_started=_utcnow(),
                )
                session.add(row)
            return row.id

    async def update_screening_result(self, result_id: str, outcome: ScreeningTypeOutcome) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(MatchingScreeningTypeResultModel)
                    .where(MatchingScreeningTypeResultModel.id == result_id)
                    .values(
                        patients_processed=outcome.patients_processed,
                        matches_created=outcome.matches_created,
                        skipped_due_to_limits=outcome.skipped_due_to_limits,
                        skipped_due_to_no_funding=outcome.skipped_due_to_no_funding,
                        skipped_due_to_existing=outcome.skipped_due_to_existing_match,
                        funds_allocated=outcome.funds_used,
                        campaigns_used=list(outcome.campaigns_involved),
                        transaction_failed=outcome.transaction_failed,
                        processing_completed=_utcnow(),
                        processing_time_ms=outcome.processing_time_ms,
                    )
                )

    async def append_logs(self, execution_id: str, entries: Sequence[Dict[str, Any]]) -> None:
        if not entries:
            return
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all([_log_row(execution_id, e) for e in entries])

    # ─── Matching reads ───

    async def load_pending_waitlist(self) -> PendingWaitlistSnapshot:
        """
        Load every PENDING waitlist entry, oldest first, with its patient profile,
        the patient's unclaimed allocations and the ACTIVE, funded campaigns of
        its screening type.
        """
        snapshot = PendingWaitlistSnapshot()
        async with self._session_factory() as session:
            stmt = (
                select(WaitlistModel)
                .where(WaitlistModel.status == WaitlistStatus.PENDING.value)
                .options(
                    selectinload(WaitlistModel.patient),
                    selectinload(WaitlistModel.screening_type)
                    .selectinload(ScreeningTypeModel.campaigns)
                    .selectinload(DonationCampaignModel.screening_types),
                )
                .order_by(WaitlistModel.joined_at.asc(), WaitlistModel.id.asc())
            )
            waitlists = (await session.execute(stmt)).scalars().all()
            allocations = await self._unclaimed_allocations(session, {w.patient_id for w in waitlists})

            rejected_campaigns = set()
            for waitlist in waitlists:
                campaign_ids = []
                for campaign_row in waitlist.screening_type.campaigns:
                    if campaign_row.status != CampaignStatus.ACTIVE.value:
                        continue
                    if (campaign_row.available_amount or 0) <= 0:
                        continue
                    if campaign_row.id in rejected_campaigns:
                        continue
                    if campaign_row.id not in snapshot.campaigns:
                        try:
                            snapshot.campaigns[campaign_row.id] = _to_campaign(campaign_row)
                        except ValidationError as e:
                            rejected_campaigns.add(campaign_row.id)
                            logger.warning("Rejected invalid campaign row", campaign_id=campaign_row.id, error=str(e))
                            snapshot.rejected_rows.append({
                                "campaign_id": campaign_row.id,
                                "error": f"Invalid campaign data: {e.error_count()} validation error(s)",
                            })
                            continue
                    campaign_ids.append(campaign_row.id)

                try:
                    snapshot.candidates.append(WaitlistCandidate(
                        waitlist_id=waitlist.id,
                        patient_id=waitlist.patient_id,
                        status=waitlist.status,
                        joined_at=waitlist.joined_at,
                        screening_type=ScreeningType(
                            id=waitlist.screening_type.id,
                            name=waitlist.screening_type.name,
                            agreed_price=waitlist.screening_type.agreed_price,
                        ),
                        patient=_to_patient(waitlist.patient),
                        active_allocations=allocations.get(waitlist.patient_id, []),
                        campaign_ids=campaign_ids,
                    ))
                except ValidationError as e:
                    logger.warning("Rejected invalid waitlist row", waitlist_id=waitlist.id, error=str(e))
                    snapshot.rejected_rows.append({
                        "waitlist_id": waitlist.id,
                        "patient_id": waitlist.patient_id,
                        "error": f"Invalid waitlist data: {e.error_count()} validation error(s)",
                    })

        logger.info(
            "Loaded pending waitlist",
            entries=len(snapshot.candidates),
            campaigns=len(snapshot.campaigns),
            rejected=len(snapshot.rejected_rows),
        )
        return snapshot

    async def _unclaimed_allocations(
        self, session, patient_ids: Iterable[str]
    ) -> Dict[str, List[ActiveAllocation]]:
        patient_ids = list(patient_ids)
        if not patient_ids:
            return {}
        stmt = (
            select(
                DonationAllocationModel.id,
                DonationAllocationModel.patient_id,
                DonationAllocationModel.campaign_id,
                DonationAllocationModel.claimed_at,
                WaitlistModel.screening_type_id,
                WaitlistModel.status,
            )
            .join(WaitlistModel, DonationAllocationModel.waitlist_id == WaitlistModel.id)
            .where(
                DonationAllocationModel.patient_id.in_(patient_ids),
                DonationAllocationModel.claimed_at.is_(None),
            )
        )
        by_patient: Dict[str, List[ActiveAllocation]] = {}
        for row in (await session.execute(stmt)).all():
            by_patient.setdefault(row.patient_id, []).append(ActiveAllocation(
                allocation_id=row.id,
                campaign_id=row.campaign_id,
                screening_type_id=row.screening_type_id,
                waitlist_status=row.status,
                claimed_at=row.claimed_at,
            ))
        return by_patient

    async def load_general_pool(self, campaign_id: str) -> Optional[Campaign]:
        async with self._session_factory() as session:
            stmt = (
                select(DonationCampaignModel)
                .where(DonationCampaignModel.id == campaign_id)
                .options(selectinload(DonationCampaignModel.screening_types))
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            try:
                return _to_campaign(row)
            except ValidationError as e:
                logger.warning("Rejected invalid general pool row", campaign_id=campaign_id, error=str(e))
                return None

    # ─── Allocation commit ───

    async def commit_allocation_batch(
        self, execution_id: str, plans: Sequence[AllocationPlan]
    ) -> List[str]:
        """
        Apply a screening-type batch atomically.

        Each campaign decrement is guarded on `available_amount >= amount` and each
        waitlist flip on `status = PENDING`; if any guard fails the whole batch
        rolls back.

        Returns:
            Created allocation ids, in plan order
        """
        now = _utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                for plan in plans:
                    result = await session.execute(
                        update(DonationCampaignModel)
                        .where(
                            DonationCampaignModel.id == plan.campaign_id,
                            DonationCampaignModel.status == CampaignStatus.ACTIVE.value,
                            DonationCampaignModel.available_amount >= plan.amount,
                        )
                        .values(
                            available_amount=DonationCampaignModel.available_amount - plan.amount,
                            reserved_amount=DonationCampaignModel.reserved_amount + plan.amount,
                            updated_at=now,
                        )
                    )
                    if result.rowcount != 1:
                        raise InsufficientFundsError(plan.campaign_id, plan.amount)

                for plan in plans:
                    result = await session.execute(
                        update(WaitlistModel)
                        .where(
                            WaitlistModel.id == plan.waitlist_id,
                            WaitlistModel.status == WaitlistStatus.PENDING.value,
                        )
                        .values(status=WaitlistStatus.MATCHED.value)
                    )
                    if result.rowcount != 1:
                        raise AllocationCommitError(f"Waitlist {plan.waitlist_id} is no longer PENDING")

                rows = [
                    DonationAllocationModel(
                        waitlist_id=plan.waitlist_id,
                        patient_id=plan.patient_id,
                        campaign_id=plan.campaign_id,
                        matching_execution_id=execution_id,
                        amount_allocated=plan.amount,
                        created_via_matching=True,
                        created_at=now,
                    )
                    for plan in plans
                ]
                session.add_all(rows)
                await session.flush()
            return [row.id for row in rows]

    # ─── Expiry ───

    async def find_expirable_waitlists(self, cutoff: datetime) -> List[ExpirableWaitlist]:
        """MATCHED, unclaimed entries that joined before `cutoff`."""
        async with self._session_factory() as session:
            stmt = (
                select(WaitlistModel)
                .where(
                    WaitlistModel.status == WaitlistStatus.MATCHED.value,
                    WaitlistModel.joined_at < cutoff,
                )
                .options(
                    selectinload(WaitlistModel.screening_type),
                    selectinload(WaitlistModel.allocation).selectinload(DonationAllocationModel.campaign),
                )
                .order_by(WaitlistModel.joined_at.asc())
            )
            items = []
            for waitlist in (await session.execute(stmt)).scalars().all():
                allocation = waitlist.allocation
                if allocation is not None and allocation.claimed_at is not None:
                    continue
                items.append(ExpirableWaitlist(
                    waitlist_id=waitlist.id,
                    patient_id=waitlist.patient_id,
                    screening_type_id=waitlist.screening_type_id,
                    screening_type_name=waitlist.screening_type.name,
                    agreed_price=waitlist.screening_type.agreed_price,
                    joined_at=waitlist.joined_at,
                    allocation_id=allocation.id if allocation else None,
                    campaign_id=allocation.campaign_id if allocation else None,
                    campaign_title=allocation.campaign.title if allocation and allocation.campaign else None,
                    amount_allocated=allocation.amount_allocated if allocation else None,
                ))
            return items

    async def expire_waitlist(self, item: ExpirableWaitlist) -> float:
        """
        Flip one MATCHED entry to EXPIRED and return its funds, atomically.

        The allocation row is kept as the audit trail.

        Returns:
            Amount returned to the campaign
        """
        if item.campaign_id is None:
            raise ExpiryError(f"Waitlist {item.waitlist_id} has no allocation")
        amount = item.amount_to_return
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WaitlistModel)
                    .where(
                        WaitlistModel.id == item.waitlist_id,
                        WaitlistModel.status == WaitlistStatus.MATCHED.value,
                    )
                    .values(status=WaitlistStatus.EXPIRED.value)
                )
                if result.rowcount != 1:
                    raise ExpiryError(f"Waitlist {item.waitlist_id} is no longer MATCHED")

                result = await session.execute(
                    update(DonationCampaignModel)
                    .where(DonationCampaignModel.id == item.campaign_id)
                    .values(
                        available_amount=DonationCampaignModel.available_amount + amount,
                        reserved_amount=DonationCampaignModel.reserved_amount - amount,
                        updated_at=_utcnow(),
                    )
                )
                if result.rowcount != 1:
                    raise ExpiryError(f"Campaign {item.campaign_id} not found")
        return amount

    # ─── Waitlist join guard ───

    async def can_join_waitlist(self, patient_id: str, screening_type_id: str) -> bool:
        """True when the patient has no PENDING or MATCHED entry for the screening type."""
        async with self._session_factory() as session:
            return not await self._has_active_entry(session, patient_id, screening_type_id)

    async def _has_active_entry(self, session, patient_id: str, screening_type_id: str) -> bool:
        stmt = select(WaitlistModel.id).where(
            WaitlistModel.patient_id == patient_id,
            WaitlistModel.screening_type_id == screening_type_id,
            WaitlistModel.status.in_(_ACTIVE_WAITLIST_STATUSES),
        ).limit(1)
        return (await session.execute(stmt)).first() is not None

    async def join_waitlist(
        self, patient_id: str, screening_type_id: str, joined_at: Optional[datetime] = None
    ) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                if await self._has_active_entry(session, patient_id, screening_type_id):
                    raise DuplicateWaitlistError(
                        f"Patient {patient_id} already waiting or matched for {screening_type_id}"
                    )
                entry = WaitlistModel(
                    patient_id=patient_id,
                    screening_type_id=screening_type_id,
                    status=WaitlistStatus.PENDING.value,
                    joined_at=joined_at or _utcnow(),
                )
                session.add(entry)
            return entry.id

    # ─── History / monitoring reads ───

    async def list_executions(
        self,
        page: int = 1,
        page_size: int = 20,
        status: Optional[ExecutionStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        filters = []
        if status:
            filters.append(MatchingExecutionModel.status == status.value)
        if date_from:
            filters.append(MatchingExecutionModel.started_at >= date_from)
        if date_to:
            filters.append(MatchingExecutionModel.started_at <= date_to)

        async with self._session_factory() as session:
            total = (await session.execute(
                select(func.count()).select_from(MatchingExecutionModel).where(*filters)
            )).scalar_one()
            rows = (await session.execute(
                select(MatchingExecutionModel)
                .where(*filters)
                .order_by(MatchingExecutionModel.started_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
            return [r.to_dict() for r in rows], total

    async def get_execution(self, execution_id: str) -> Dict[str, Any]:
        async with self._session_factory() as session:
            row = (await session.execute(
                select(MatchingExecutionModel)
                .where(MatchingExecutionModel.id == execution_id)
                .options(selectinload(MatchingExecutionModel.screening_type_results))
            )).scalar_one_or_none()
            if row is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            return row.to_dict(include_results=True)

    async def list_execution_logs(
        self,
        execution_id: str,
        page: int = 1,
        page_size: int = 50,
        level: Optional[str] = None,
        patient_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        filters = [MatchingExecutionLogModel.execution_id == execution_id]
        if level:
            filters.append(MatchingExecutionLogModel.level == level)
        if patient_id:
            filters.append(MatchingExecutionLogModel.patient_id == patient_id)
        if campaign_id:
            filters.append(MatchingExecutionLogModel.campaign_id == campaign_id)

        async with self._session_factory() as session:
            total = (await session.execute(
                select(func.count()).select_from(MatchingExecutionLogModel).where(*filters)
            )).scalar_one()
            rows = (await session.execute(
                select(MatchingExecutionLogModel)
                .where(*filters)
                .order_by(MatchingExecutionLogModel.timestamp.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
            return [r.to_dict() for r in rows], total

    async def recent_executions(self, since: datetime, limit: int = 10) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(MatchingExecutionModel)
                .where(MatchingExecutionModel.started_at >= since)
                .order_by(MatchingExecutionModel.started_at.desc())
                .limit(limit)
            )).scalars().all()
            return [r.to_dict() for r in rows]

    async def count_pending_waitlist(self) -> int:
        async with self._session_factory() as session:
            return (await session.execute(
                select(func.count()).select_from(WaitlistModel)
                .where(WaitlistModel.status == WaitlistStatus.PENDING.value)
            )).scalar_one()

    async def count_allocations(self) -> int:
        async with self._session_factory() as session:
            return (await session.execute(
                select(func.count()).select_from(DonationAllocationModel)
            )).scalar_one()

    async def system_health(self, window_hours: int = 24, sample: int = 10) -> Dict[str, Any]:
        """
        Summarize recent runs for monitoring.

        Status is "healthy" with no failed runs in the sample, "warning" while
        failures stay under half of it and "critical" otherwise.
        """
        since = _utcnow() - timedelta(hours=window_hours)
        recent = await self.recent_executions(since, limit=sample)
        total = len(recent)
        failed = sum(1 for r in recent if r["status"] == ExecutionStatus.FAILED.value)
        completed = sum(1 for r in recent if r["status"] == ExecutionStatus.COMPLETED.value)
        timings = [r["processing_time_ms"] for r in recent if r["processing_time_ms"]]

        if failed == 0:
            status = "healthy"
        elif failed < total / 2:
            status = "warning"
        else:
            status = "critical"

        return {
            "status": status,
            "window_hours": window_hours,
            "total_executions": total,
            "completed_executions": completed,
            "failed_executions": failed,
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
            "average_processing_time_ms": round(sum(timings) / len(timings)) if timings else 0,
            "pending_waitlist_count": await self.count_pending_waitlist(),
            "total_allocations": await self.count_allocations(),
            "last_execution": recent[0] if recent else None,
        }
