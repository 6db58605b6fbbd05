"""Typed records read from storage by the matching engine.

These are validated copies of database rows; the matching components never
see ORM objects.
"""
from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .enums import CampaignStatus, Gender, WaitlistStatus


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def age_on(date_of_birth: date, today: date) -> int:
    """Whole years between a birth date and today."""
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


class PatientProfile(BaseModel):
    """Demographic attributes used for targeting. Read-only here."""
    patient_id: str
    age: Optional[int] = Field(default=None, ge=0)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    state: Optional[str] = None
    lga: Optional[str] = None
    monthly_income: Optional[float] = None

    def effective_age(self, today: Optional[date] = None) -> Optional[int]:
        """Stated age, else age derived from date of birth, else None."""
        if self.age:
            return self.age
        if self.date_of_birth is None:
            return None
        return age_on(self.date_of_birth, today or datetime.now(timezone.utc).date())


class ActiveAllocation(BaseModel):
    """An unclaimed allocation held by a patient, with its waitlist status."""
    allocation_id: str
    campaign_id: str
    screening_type_id: str
    waitlist_status: WaitlistStatus
    claimed_at: Optional[datetime] = None

    @property
    def counts_toward_limit(self) -> bool:
        return self.claimed_at is None and self.waitlist_status != WaitlistStatus.EXPIRED


class ScreeningType(BaseModel):
    id: str
    name: str
    agreed_price: float = Field(..., ge=0)


class Campaign(BaseModel):
    """A donor-funded pool, optionally targeted."""
    id: str
    donor_id: str
    title: str = "Untitled Campaign"
    available_amount: float = 0.0
    reserved_amount: float = 0.0
    initial_amount: float = 0.0
    status: CampaignStatus
    target_age_range: Optional[str] = None
    target_age_min: Optional[int] = None
    target_age_max: Optional[int] = None
    target_gender: Optional[Gender] = None
    target_states: List[str] = Field(default_factory=list)
    target_lgas: List[str] = Field(default_factory=list)
    target_income_min: Optional[float] = None
    target_income_max: Optional[float] = None
    screening_type_ids: List[str] = Field(default_factory=list)
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("target_states", "target_lgas", "screening_type_ids", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return value or []

    @property
    def specificity(self) -> int:
        """Number of screening types funded; lower is more specific."""
        return len(self.screening_type_ids)

    def funds(self, screening_type_id: str) -> bool:
        return screening_type_id in self.screening_type_ids


class WaitlistCandidate(BaseModel):
    """A waitlist entry joined with everything matching needs to decide on it."""
    waitlist_id: str
    patient_id: str
    status: WaitlistStatus
    joined_at: datetime
    screening_type: ScreeningType
    patient: PatientProfile
    active_allocations: List[ActiveAllocation] = Field(default_factory=list)
    campaign_ids: List[str] = Field(default_factory=list)

    @field_validator("joined_at")
    @classmethod
    def normalize_joined_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def screening_type_id(self) -> str:
        return self.screening_type.id

    @property
    def active_allocation_count(self) -> int:
        return sum(1 for a in self.active_allocations if a.counts_toward_limit)


class PendingWaitlistSnapshot(BaseModel):
    """Result of the bulk pending-waitlist load."""
    candidates: List[WaitlistCandidate] = Field(default_factory=list)
    campaigns: dict[str, Campaign] = Field(default_factory=dict)
    rejected_rows: List[dict] = Field(default_factory=list)


class ExpirableWaitlist(BaseModel):
    """A MATCHED entry past the expiry window, with its allocation."""
    waitlist_id: str
    patient_id: str
    screening_type_id: str
    screening_type_name: str
    agreed_price: float
    joined_at: datetime
    allocation_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_title: Optional[str] = None
    amount_allocated: Optional[float] = None

    @field_validator("joined_at")
    @classmethod
    def normalize_joined_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def amount_to_return(self) -> float:
        return self.amount_allocated or self.agreed_price
