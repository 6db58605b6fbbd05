"""Expiry reclaimer — returns funds held by long-unclaimed matches."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from screening_match.config.logging_config import get_logger
from screening_match.matching.audit import ExecutionAuditor
from screening_match.models.matching import ExpiryOutcome
from screening_match.notifications.dispatcher import NotificationDispatcher, expired_message

logger = get_logger(__name__)


class ExpiryReclaimer:
    def __init__(self, repository, dispatcher: NotificationDispatcher):
        self.repository = repository
        self.dispatcher = dispatcher

    async def reclaim(
        self,
        expiry_days: int,
        auditor: Optional[ExecutionAuditor] = None,
        now: Optional[datetime] = None,
    ) -> ExpiryOutcome:
        """
        Expire MATCHED entries that joined more than `expiry_days` ago.

        Each entry is reversed in its own transaction; a failure is recorded
        and the remaining entries are still processed.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=expiry_days)
        outcome = ExpiryOutcome()

        try:
            items = await self.repository.find_expirable_waitlists(cutoff)
        except SQLAlchemyError as e:
            logger.error("Expiry lookup failed", error=str(e))
            outcome.errors.append({"error": f"Expiry lookup failed: {e}", "waitlist_id": "SYSTEM_ERROR"})
            if auditor:
                auditor.error("Expiry lookup failed", error=str(e))
            return outcome

        for item in items:
            if not item.allocation_id or not item.campaign_id:
                logger.warning("Skipping expired waitlist without allocation", waitlist_id=item.waitlist_id)
                outcome.errors.append({
                    "error": "Expired waitlist has no allocation to reclaim",
                    "waitlist_id": item.waitlist_id,
                })
                if auditor:
                    auditor.warning(
                        "Expired waitlist has no allocation to reclaim",
                        waitlist_id=item.waitlist_id,
                        patient_id=item.patient_id,
                    )
                continue
            try:
                amount = await self.repository.expire_waitlist(item)
            except Exception as e:
                logger.error("Failed to expire allocation", waitlist_id=item.waitlist_id, error=str(e))
                outcome.errors.append({"error": str(e), "waitlist_id": item.waitlist_id})
                if auditor:
                    auditor.error(
                        "Failed to expire allocation",
                        waitlist_id=item.waitlist_id,
                        patient_id=item.patient_id,
                        error=str(e),
                    )
                continue

            outcome.expired_count += 1
            outcome.funds_returned += amount
            if auditor:
                auditor.info(
                    f"Expired allocation for {item.screening_type_name}",
                    waitlist_id=item.waitlist_id,
                    patient_id=item.patient_id,
                    campaign_id=item.campaign_id,
                    allocation_id=item.allocation_id,
                    amount_returned=amount,
                )

            template = expired_message(item.screening_type_name)
            try:
                await self.dispatcher.notify(
                    template["type"],
                    template["title"],
                    template["message"],
                    [item.patient_id],
                    {
                        "waitlist_id": item.waitlist_id,
                        "screening_type_id": item.screening_type_id,
                        "campaign_id": item.campaign_id,
                        "campaign_title": item.campaign_title,
                    },
                    send_email=template["send_email"],
                )
            except Exception as e:
                logger.warning("Expiry notification failed", patient_id=item.patient_id, error=str(e))
                outcome.errors.append({
                    "error": f"Expiry notification failed: {e}",
                    "waitlist_id": item.waitlist_id,
                })

        if outcome.expired_count:
            logger.info(
                "Expired allocations reclaimed",
                expired=outcome.expired_count,
                funds_returned=outcome.funds_returned,
            )
        return outcome
