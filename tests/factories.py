"""In-memory record builders for tests of the pure matching components."""
from datetime import datetime, timedelta, timezone
from itertools import count

from screening_match.models.records import (
    ActiveAllocation,
    Campaign,
    PatientProfile,
    ScreeningType,
    WaitlistCandidate,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)
_ids = count(1)

CERVICAL = ScreeningType(id="st-cervical", name="Cervical Cancer Screening", agreed_price=5000.0)
BREAST = ScreeningType(id="st-breast", name="Breast Cancer Screening", agreed_price=8000.0)


def make_patient(**fields) -> PatientProfile:
    defaults = {
        "patient_id": f"patient-{next(_ids)}",
        "age": 35,
        "gender": "FEMALE",
        "state": "Lagos",
        "lga": "Ikeja",
        "monthly_income": 50000.0,
    }
    defaults.update(fields)
    return PatientProfile(**defaults)


def make_campaign(**fields) -> Campaign:
    defaults = {
        "id": f"campaign-{next(_ids)}",
        "donor_id": "donor-1",
        "title": "Test Campaign",
        "available_amount": 100000.0,
        "status": "ACTIVE",
        "screening_type_ids": [CERVICAL.id],
        "created_at": BASE_TIME,
    }
    defaults.update(fields)
    return Campaign(**defaults)


def make_candidate(patient=None, screening_type=CERVICAL, joined_minutes=0, allocations=(), **fields) -> WaitlistCandidate:
    patient = patient or make_patient()
    defaults = {
        "waitlist_id": f"waitlist-{next(_ids)}",
        "patient_id": patient.patient_id,
        "status": "PENDING",
        "joined_at": BASE_TIME + timedelta(minutes=joined_minutes),
        "screening_type": screening_type,
        "patient": patient,
        "active_allocations": list(allocations),
    }
    defaults.update(fields)
    return WaitlistCandidate(**defaults)


def make_allocation(screening_type_id=CERVICAL.id, waitlist_status="MATCHED", claimed_at=None) -> ActiveAllocation:
    return ActiveAllocation(
        allocation_id=f"allocation-{next(_ids)}",
        campaign_id="campaign-x",
        screening_type_id=screening_type_id,
        waitlist_status=waitlist_status,
        claimed_at=claimed_at,
    )
