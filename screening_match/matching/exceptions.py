"""Exceptions for the waitlist matching module."""


class MatchingError(Exception):
    """Base error for the matching engine."""
    pass


class ExecutionTrackingError(MatchingError):
    """The run's audit record could not be created or finalized."""
    pass


class WaitlistLoadError(MatchingError):
    """The bulk pending-waitlist query failed."""
    pass


class InsufficientFundsError(MatchingError):
    """A guarded fund decrement found the campaign unable to cover the amount."""

    def __init__(self, campaign_id: str, amount: float):
        super().__init__(f"Campaign {campaign_id} cannot cover {amount:,.2f}")
        self.campaign_id = campaign_id
        self.amount = amount


class AllocationCommitError(MatchingError):
    """A screening-type batch transaction failed and was rolled back."""
    pass


class ExpiryError(MatchingError):
    """A single allocation expiry could not be applied."""
    pass


class DuplicateWaitlistError(MatchingError):
    """Patient already has a PENDING or MATCHED entry for the screening type."""
    pass


class ExecutionNotFoundError(MatchingError):
    """Requested matching execution does not exist."""
    pass
