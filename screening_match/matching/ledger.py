"""Run-scoped bookkeeping shared by the screening-type groups of one run.

Both trackers are created per run and dropped with it. Reservations made while
planning a group are released again if that group's transaction fails.
"""
from typing import Dict, Iterable

from screening_match.models.matching import AllocationPlan
from screening_match.models.records import Campaign, WaitlistCandidate


class FundLedger:
    """In-memory remaining balance per campaign for the current run."""

    def __init__(self, campaigns: Iterable[Campaign] = ()):
        self._available: Dict[str, float] = {}
        for campaign in campaigns:
            self.track(campaign)

    def track(self, campaign: Campaign) -> None:
        self._available.setdefault(campaign.id, campaign.available_amount)

    def available(self, campaign: Campaign) -> float:
        self.track(campaign)
        return self._available[campaign.id]

    def reserve(self, campaign_id: str, amount: float) -> None:
        remaining = self._available.get(campaign_id, 0.0)
        if amount > remaining:
            raise ValueError(f"Cannot reserve {amount} from campaign {campaign_id} ({remaining} left)")
        self._available[campaign_id] = remaining - amount

    def release(self, campaign_id: str, amount: float) -> None:
        self._available[campaign_id] = self._available.get(campaign_id, 0.0) + amount

    def release_plans(self, plans: Iterable[AllocationPlan]) -> None:
        for plan in plans:
            self.release(plan.campaign_id, plan.amount)


class ExposureTracker:
    """Active (unclaimed, non-expired) allocation count per patient."""

    def __init__(self, limit: int = 3):
        self.limit = limit
        self._counts: Dict[str, int] = {}

    def seed(self, candidate: WaitlistCandidate) -> None:
        self._counts.setdefault(candidate.patient_id, candidate.active_allocation_count)

    def active_count(self, patient_id: str) -> int:
        return self._counts.get(patient_id, 0)

    def at_limit(self, candidate: WaitlistCandidate) -> bool:
        self.seed(candidate)
        return self._counts[candidate.patient_id] >= self.limit

    def add(self, patient_id: str) -> None:
        self._counts[patient_id] = self._counts.get(patient_id, 0) + 1

    def release(self, patient_id: str) -> None:
        self._counts[patient_id] = max(0, self._counts.get(patient_id, 0) - 1)

    def release_plans(self, plans: Iterable[AllocationPlan]) -> None:
        for plan in plans:
            self.release(plan.patient_id)
