"""Targeting evaluation — does a patient fall inside a campaign's audience, and how well.

Pure functions; no I/O.
"""
from datetime import date
from typing import Optional, Tuple

from screening_match.models.records import Campaign, PatientProfile

AGE_RANGE_DEFAULT_MIN = 0
AGE_RANGE_DEFAULT_MAX = 999

AGE_SCORE = 10
GENDER_SCORE = 15
STATE_SCORE = 20
LGA_SCORE = 25
INCOME_SCORE = 10

MAX_SCORE = AGE_SCORE + GENDER_SCORE + STATE_SCORE + LGA_SCORE + INCOME_SCORE


def _parse_bound(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return 0


def parse_age_range(age_range: str) -> Tuple[int, int]:
    """
    Parse a "min-max" age range.

    Missing or unparseable bounds fall back to 0 and 999, so "40-" means 40 and over.
    """
    parts = age_range.split("-")
    low = _parse_bound(parts[0]) if parts else 0
    high = _parse_bound(parts[1]) if len(parts) > 1 else 0
    return low or AGE_RANGE_DEFAULT_MIN, high or AGE_RANGE_DEFAULT_MAX


def _has_age_bounds(campaign: Campaign) -> bool:
    return bool(campaign.target_age_min or campaign.target_age_max)


def _has_income_bounds(campaign: Campaign) -> bool:
    return campaign.target_income_min is not None or campaign.target_income_max is not None


def _age_allowed(age: Optional[int], campaign: Campaign) -> bool:
    if campaign.target_age_range:
        if age is None:
            return True
        low, high = parse_age_range(campaign.target_age_range)
        return low <= age <= high
    if _has_age_bounds(campaign):
        if age is None:
            return True
        if campaign.target_age_min and age < campaign.target_age_min:
            return False
        if campaign.target_age_max and age > campaign.target_age_max:
            return False
    return True


def _income_in_bounds(patient: PatientProfile, campaign: Campaign) -> bool:
    income = patient.monthly_income or 0
    if campaign.target_income_min is not None and income < campaign.target_income_min:
        return False
    if campaign.target_income_max is not None and income > campaign.target_income_max:
        return False
    return True


def matches(
    patient: PatientProfile,
    campaign: Campaign,
    demographic: bool = True,
    geographic: bool = True,
    today: Optional[date] = None,
) -> bool:
    """
    Check a patient against a campaign's targeting criteria.

    Every configured criterion must pass; an unconfigured one always passes.
    Demographic criteria are age, gender and income; geographic criteria are
    state and LGA. Disabling both turns targeting off entirely.

    Args:
        patient: Patient demographics
        campaign: Campaign with optional targeting
        demographic: Apply age/gender/income criteria
        geographic: Apply state/LGA criteria
        today: Reference date for age derivation

    Returns:
        True if the patient is inside the campaign's audience
    """
    if demographic:
        if not _age_allowed(patient.effective_age(today), campaign):
            return False

        if campaign.target_gender is not None and patient.gender != campaign.target_gender:
            return False

        if _has_income_bounds(campaign) and not _income_in_bounds(patient, campaign):
            return False

    if geographic:
        if campaign.target_states and patient.state not in campaign.target_states:
            return False

        if campaign.target_lgas and patient.lga not in campaign.target_lgas:
            return False

    return True


def score(campaign: Campaign, patient: PatientProfile, today: Optional[date] = None) -> int:
    """
    Rank how closely a campaign's targeting fits a patient (0..80).

    Only used to order campaigns that already passed `matches`.
    """
    total = 0

    age = patient.effective_age(today)
    if age is not None:
        if campaign.target_age_range:
            low, high = parse_age_range(campaign.target_age_range)
            if low <= age <= high:
                total += AGE_SCORE
        elif _has_age_bounds(campaign):
            low = campaign.target_age_min or 0
            high = campaign.target_age_max or 150
            if low <= age <= high:
                total += AGE_SCORE

    if campaign.target_gender is not None and patient.gender == campaign.target_gender:
        total += GENDER_SCORE

    if patient.state and patient.state in campaign.target_states:
        total += STATE_SCORE

    if patient.lga and patient.lga in campaign.target_lgas:
        total += LGA_SCORE

    if _has_income_bounds(campaign) and _income_in_bounds(patient, campaign):
        total += INCOME_SCORE

    return total
