"""Screening Match — waitlist-to-campaign matching for donor-funded screenings."""
