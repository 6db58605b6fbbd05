"""Allocation committer — applies a screening-type batch and notifies the parties."""
import asyncio
from typing import Any, Dict, List, Sequence, Tuple

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from screening_match.config.logging_config import get_logger
from screening_match.matching.exceptions import AllocationCommitError, MatchingError
from screening_match.models.matching import AllocationPlan
from screening_match.notifications.dispatcher import (
    NotificationDispatcher,
    matched_donor_message,
    matched_patient_message,
)

logger = get_logger(__name__)


class AllocationCommitter:
    def __init__(self, repository, dispatcher: NotificationDispatcher):
        self.repository = repository
        self.dispatcher = dispatcher

    async def commit(self, execution_id: str, plans: Sequence[AllocationPlan]) -> List[str]:
        """
        Commit all plans of one batch in a single transaction.

        Returns:
            Created allocation ids, in plan order

        Raises:
            AllocationCommitError: the transaction was rolled back; nothing persisted
        """
        if not plans:
            return []
        try:
            allocation_ids = await self._commit_batch(execution_id, plans)
        except (SQLAlchemyError, MatchingError) as e:
            logger.error(
                "Allocation batch rolled back",
                screening_type_id=plans[0].screening_type_id,
                plans=len(plans),
                error=str(e),
            )
            raise AllocationCommitError(str(e)) from e

        logger.info(
            "Allocation batch committed",
            screening_type_id=plans[0].screening_type_id,
            allocations=len(allocation_ids),
            amount=sum(p.amount for p in plans),
        )
        return allocation_ids

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    async def _commit_batch(self, execution_id: str, plans: Sequence[AllocationPlan]) -> List[str]:
        """Retried on lock timeouts and deadlocks; the failed attempt has already rolled back."""
        return await self.repository.commit_allocation_batch(execution_id, plans)

    async def notify(
        self, plans: Sequence[AllocationPlan], allocation_ids: Sequence[str]
    ) -> Tuple[int, List[Dict[str, Any]]]:
        """
        Send the patient and donor notices for committed matches.

        Returns:
            (notifications sent, failures as warning entries)
        """
        sends = []
        for plan, allocation_id in zip(plans, allocation_ids):
            data = {
                "allocation_id": allocation_id,
                "waitlist_id": plan.waitlist_id,
                "campaign_id": plan.campaign_id,
                "campaign_title": plan.campaign_title,
                "screening_type_id": plan.screening_type_id,
                "screening_type_name": plan.screening_type_name,
                "amount": plan.amount,
                "is_general_pool": plan.is_general_pool,
            }
            for recipient, template in (
                (plan.patient_id, matched_patient_message(plan.screening_type_name)),
                (plan.donor_id, matched_donor_message(plan.screening_type_name)),
            ):
                sends.append((plan, recipient, self.dispatcher.notify(
                    template["type"],
                    template["title"],
                    template["message"],
                    [recipient],
                    data,
                    send_email=template["send_email"],
                )))

        results = await asyncio.gather(*(coro for _, _, coro in sends), return_exceptions=True)

        sent = 0
        failures: List[Dict[str, Any]] = []
        for (plan, recipient, _), result in zip(sends, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Notification failed",
                    recipient_id=recipient,
                    waitlist_id=plan.waitlist_id,
                    error=str(result),
                )
                failures.append({
                    "warning": f"Notification failed: {result}",
                    "recipient_id": recipient,
                    "waitlist_id": plan.waitlist_id,
                })
            else:
                sent += 1
        return sent, failures
