"""Eligibility filter — picks the patients of one screening type to consider this run."""
from typing import List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, Field

from screening_match.config.logging_config import get_logger
from screening_match.matching.ledger import ExposureTracker
from screening_match.models.enums import WaitlistStatus
from screening_match.models.records import WaitlistCandidate

logger = get_logger(__name__)


class EligibilityResult(BaseModel):
    selected: List[WaitlistCandidate] = Field(default_factory=list)
    skipped_due_to_limits: List[WaitlistCandidate] = Field(default_factory=list)
    skipped_due_to_existing_match: List[WaitlistCandidate] = Field(default_factory=list)
    duplicates_skipped: int = 0


def _matched_pairs(entries: Sequence[WaitlistCandidate]) -> Set[Tuple[str, str]]:
    """(patient, screening type) pairs that already hold a MATCHED entry."""
    pairs = set()
    for entry in entries:
        if entry.status == WaitlistStatus.MATCHED:
            pairs.add((entry.patient_id, entry.screening_type_id))
        for allocation in entry.active_allocations:
            if allocation.waitlist_status == WaitlistStatus.MATCHED and allocation.claimed_at is None:
                pairs.add((entry.patient_id, allocation.screening_type_id))
    return pairs


def select_batch(
    entries: Sequence[WaitlistCandidate],
    batch_size: int,
    exposure: Optional[ExposureTracker] = None,
) -> EligibilityResult:
    """
    Select up to `batch_size` entries, oldest first.

    An entry is skipped when its patient was already considered in this batch,
    already holds the maximum number of active allocations, or already has a
    MATCHED entry for the same screening type. Skipped entries stay PENDING.

    Args:
        entries: Waitlist entries of a single screening type
        batch_size: Maximum number of entries to accept
        exposure: Run-scoped active allocation counts (a fresh tracker if omitted)

    Returns:
        EligibilityResult with the accepted entries and the skip buckets
    """
    exposure = exposure or ExposureTracker()
    result = EligibilityResult()
    if batch_size <= 0:
        return result

    ordered = sorted(entries, key=lambda e: e.joined_at)
    already_matched = _matched_pairs(ordered)
    seen: Set[str] = set()

    for entry in ordered:
        if len(result.selected) >= batch_size:
            break
        if entry.patient_id in seen:
            result.duplicates_skipped += 1
            continue
        seen.add(entry.patient_id)

        if exposure.at_limit(entry):
            logger.debug(
                "Skipping patient at allocation limit",
                patient_id=entry.patient_id,
                active=exposure.active_count(entry.patient_id),
            )
            result.skipped_due_to_limits.append(entry)
            continue

        if (entry.patient_id, entry.screening_type_id) in already_matched:
            logger.debug(
                "Skipping patient already matched for screening type",
                patient_id=entry.patient_id,
                screening_type_id=entry.screening_type_id,
            )
            result.skipped_due_to_existing_match.append(entry)
            continue

        result.selected.append(entry)

    return result
