"""SQLAlchemy ORM models for the screening match tables."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Table, Text,
)
from sqlalchemy.orm import declarative_base, relationship


def _utcnow():
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid4())


def _iso(value):
    return value.isoformat() if value else None


Base = declarative_base()


campaign_screening_types = Table(
    "campaign_screening_types",
    Base.metadata,
    Column("campaign_id", String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), primary_key=True),
    Column("screening_type_id", String(36), ForeignKey("screening_types.id", ondelete="CASCADE"), primary_key=True),
)


class PatientModel(Base):
    """Patient user with the profile fields used for targeting."""
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=_uuid)
    full_name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=True)
    age = Column(Integer, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    gender = Column(String(10), nullable=True)
    state = Column(String(100), nullable=True)
    lga = Column(String(100), nullable=True)
    monthly_income = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ScreeningTypeModel(Base):
    __tablename__ = "screening_types"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    agreed_price = Column(Float, nullable=False, default=0.0)
    active = Column(Boolean, nullable=False, default=True)

    campaigns = relationship(
        "DonationCampaignModel",
        secondary=campaign_screening_types,
        back_populates="screening_types",
    )


class DonationCampaignModel(Base):
    """Donor-funded campaign. `available_amount` only moves inside matching/expiry transactions."""
    __tablename__ = "campaigns"

    id = Column(String(36), primary_key=True, default=_uuid)
    donor_id = Column(String(36), nullable=False)
    title = Column(String(300), nullable=False, default="Untitled Campaign")
    purpose = Column(Text, nullable=True)
    initial_amount = Column(Float, nullable=False, default=0.0)
    available_amount = Column(Float, nullable=False, default=0.0)
    reserved_amount = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="PENDING")

    target_age_range = Column(String(20), nullable=True)
    target_age_min = Column(Integer, nullable=True)
    target_age_max = Column(Integer, nullable=True)
    target_gender = Column(String(10), nullable=True)
    target_states = Column(JSON, nullable=True)
    target_lgas = Column(JSON, nullable=True)
    target_income_min = Column(Float, nullable=True)
    target_income_max = Column(Float, nullable=True)

    expiry_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    screening_types = relationship(
        "ScreeningTypeModel",
        secondary=campaign_screening_types,
        back_populates="campaigns",
    )

    __table_args__ = (
        Index("ix_campaigns_status_available", "status", "available_amount"),
    )


class WaitlistModel(Base):
    """A patient's request for a funded screening."""
    __tablename__ = "waitlists"

    id = Column(String(36), primary_key=True, default=_uuid)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    screening_type_id = Column(String(36), ForeignKey("screening_types.id"), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("PatientModel")
    screening_type = relationship("ScreeningTypeModel")
    allocation = relationship("DonationAllocationModel", back_populates="waitlist", uselist=False)

    __table_args__ = (
        Index("ix_waitlists_status_joined", "status", "joined_at"),
        Index("ix_waitlists_patient_screening", "patient_id", "screening_type_id"),
    )


class DonationAllocationModel(Base):
    """Link between a matched waitlist entry and the campaign funding it. Never deleted."""
    __tablename__ = "donation_allocations"

    id = Column(String(36), primary_key=True, default=_uuid)
    waitlist_id = Column(String(36), ForeignKey("waitlists.id"), nullable=False, unique=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    campaign_id = Column(String(36), ForeignKey("campaigns.id"), nullable=False)
    matching_execution_id = Column(String(36), ForeignKey("matching_executions.id"), nullable=True)
    amount_allocated = Column(Float, nullable=False)
    created_via_matching = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    waitlist = relationship("WaitlistModel", back_populates="allocation")
    campaign = relationship("DonationCampaignModel")

    __table_args__ = (
        Index("ix_allocations_patient_claimed", "patient_id", "claimed_at"),
    )


class NotificationModel(Base):
    """A notification addressed to one user."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    type = Column(String(40), nullable=False)
    title = Column(String(300), nullable=False)
    message = Column(Text, nullable=False)
    recipient_id = Column(String(36), nullable=False, index=True)
    data = Column(JSON, nullable=True)
    send_email = Column(Boolean, nullable=False, default=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MatchingExecutionModel(Base):
    """One record per matching run. Immutable once COMPLETED or FAILED."""
    __tablename__ = "matching_executions"

    id = Column(String(36), primary_key=True, default=_uuid)
    execution_reference = Column(String(40), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="RUNNING")
    batch_config = Column(JSON, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    screening_types_processed = Column(Integer, nullable=False, default=0)
    patients_evaluated = Column(Integer, nullable=False, default=0)
    successful_matches = Column(Integer, nullable=False, default=0)
    skipped_due_to_limits = Column(Integer, nullable=False, default=0)
    skipped_due_to_no_funding = Column(Integer, nullable=False, default=0)
    skipped_due_to_existing_match = Column(Integer, nullable=False, default=0)
    total_funds_allocated = Column(Float, nullable=False, default=0.0)
    general_pool_funds_used = Column(Float, nullable=False, default=0.0)
    campaigns_used_count = Column(Integer, nullable=False, default=0)
    expired_allocations = Column(Integer, nullable=False, default=0)
    funds_returned_from_expiry = Column(Float, nullable=False, default=0.0)
    notifications_sent = Column(Integer, nullable=False, default=0)
    processing_time_ms = Column(Integer, nullable=True)
    cancelled = Column(Boolean, nullable=False, default=False)

    metrics = Column(JSON, nullable=True)
    errors = Column(JSON, nullable=True)
    warnings = Column(JSON, nullable=True)

    screening_type_results = relationship(
        "MatchingScreeningTypeResultModel",
        back_populates="execution",
        order_by="MatchingScreeningTypeResultModel.processing_started",
    )

    __table_args__ = (
        Index("ix_matching_executions_started", "started_at"),
    )

    def to_dict(self, include_results: bool = False) -> dict:
        data = {
            "id": self.id,
            "execution_reference": self.execution_reference,
            "status": self.status,
            "batch_config": self.batch_config,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "screening_types_processed": self.screening_types_processed,
            "patients_evaluated": self.patients_evaluated,
            "successful_matches": self.successful_matches,
            "skipped_due_to_limits": self.skipped_due_to_limits,
            "skipped_due_to_no_funding": self.skipped_due_to_no_funding,
            "skipped_due_to_existing_match": self.skipped_due_to_existing_match,
            "total_funds_allocated": self.total_funds_allocated,
            "general_pool_funds_used": self.general_pool_funds_used,
            "campaigns_used_count": self.campaigns_used_count,
            "expired_allocations": self.expired_allocations,
            "funds_returned_from_expiry": self.funds_returned_from_expiry,
            "notifications_sent": self.notifications_sent,
            "processing_time_ms": self.processing_time_ms,
            "cancelled": self.cancelled,
            "errors": self.errors or [],
            "warnings": self.warnings or [],
        }
        if include_results:
            data["metrics"] = self.metrics
            data["screening_type_results"] = [r.to_dict() for r in self.screening_type_results]
        return data


class MatchingScreeningTypeResultModel(Base):
    """Per-run, per-screening-type counters."""
    __tablename__ = "matching_screening_type_results"

    id = Column(String(36), primary_key=True, default=_uuid)
    execution_id = Column(String(36), ForeignKey("matching_executions.id"), nullable=False, index=True)
    screening_type_id = Column(String(36), nullable=False)
    screening_type_name = Column(String(200), nullable=False)
    patients_found = Column(Integer, nullable=False, default=0)
    patients_processed = Column(Integer, nullable=False, default=0)
    matches_created = Column(Integer, nullable=False, default=0)
    skipped_due_to_limits = Column(Integer, nullable=False, default=0)
    skipped_due_to_no_funding = Column(Integer, nullable=False, default=0)
    skipped_due_to_existing = Column(Integer, nullable=False, default=0)
    funds_allocated = Column(Float, nullable=False, default=0.0)
    campaigns_used = Column(JSON, nullable=True)
    transaction_failed = Column(Boolean, nullable=False, default=False)
    processing_started = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processing_completed = Column(DateTime(timezone=True), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    execution = relationship("MatchingExecutionModel", back_populates="screening_type_results")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "screening_type_id": self.screening_type_id,
            "screening_type_name": self.screening_type_name,
            "patients_found": self.patients_found,
            "patients_processed": self.patients_processed,
            "matches_created": self.matches_created,
            "skipped_due_to_limits": self.skipped_due_to_limits,
            "skipped_due_to_no_funding": self.skipped_due_to_no_funding,
            "skipped_due_to_existing": self.skipped_due_to_existing,
            "funds_allocated": self.funds_allocated,
            "campaigns_used": self.campaigns_used or [],
            "transaction_failed": self.transaction_failed,
            "processing_started": _iso(self.processing_started),
            "processing_completed": _iso(self.processing_completed),
            "processing_time_ms": self.processing_time_ms,
        }


class MatchingExecutionLogModel(Base):
    """Append-only audit line for a matching run."""
    __tablename__ = "matching_execution_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    execution_id = Column(String(36), ForeignKey("matching_executions.id"), nullable=False)
    level = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    patient_id = Column(String(36), nullable=True)
    campaign_id = Column(String(36), nullable=True)
    waitlist_id = Column(String(36), nullable=True)
    screening_type_id = Column(String(36), nullable=True)
    allocation_id = Column(String(36), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_execution_logs_execution_ts", "execution_id", "timestamp"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "level": self.level,
            "message": self.message,
            "context": self.context or {},
            "patient_id": self.patient_id,
            "campaign_id": self.campaign_id,
            "waitlist_id": self.waitlist_id,
            "screening_type_id": self.screening_type_id,
            "allocation_id": self.allocation_id,
            "timestamp": _iso(self.timestamp),
        }
