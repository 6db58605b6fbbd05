"""Request models for screening match API endpoints."""
from screening_match.models.matching import MatchingConfigOverrides


class TriggerMatchingRequest(MatchingConfigOverrides):
    """Optional per-run overrides for a manually triggered matching run."""
