"""Campaign selector — picks the single best funder for an eligible patient."""
from datetime import date
from typing import Iterable, Optional

from pydantic import BaseModel

from screening_match.config.logging_config import get_logger
from screening_match.matching import targeting
from screening_match.matching.ledger import FundLedger
from screening_match.models.enums import CampaignStatus
from screening_match.models.matching import MatchingConfig
from screening_match.models.records import Campaign, WaitlistCandidate

logger = get_logger(__name__)


class CampaignSelection(BaseModel):
    campaign: Optional[Campaign] = None
    is_general_pool: bool = False
    targeting_matches: int = 0
    targeting_mismatches: int = 0


def select_campaign(
    candidate: WaitlistCandidate,
    campaigns: Iterable[Campaign],
    general_pool: Optional[Campaign],
    config: MatchingConfig,
    ledger: Optional[FundLedger] = None,
    today: Optional[date] = None,
) -> CampaignSelection:
    """
    Choose the campaign that should fund this patient's screening.

    Eligible campaigns are ACTIVE, fund the screening type, accept the patient
    under targeting and can cover the agreed price. They are ranked by targeting
    score (desc), number of funded screening types (asc), available funds (desc)
    and creation date (asc). With no eligible campaign the general pool is used
    if it is ACTIVE and can cover the price.

    Args:
        candidate: Eligible waitlist entry with patient profile
        campaigns: Campaigns linked to the screening type
        general_pool: Fallback campaign, if configured
        config: Run configuration (targeting toggles)
        ledger: Run balances; falls back to each campaign's loaded balance

    Returns:
        CampaignSelection; `campaign` is None when nothing can fund the patient
    """
    ledger = ledger or FundLedger()
    price = candidate.screening_type.agreed_price
    pool_id = general_pool.id if general_pool else None
    selection = CampaignSelection()

    eligible = []
    for campaign in campaigns:
        if campaign.id == pool_id:
            continue
        if campaign.status != CampaignStatus.ACTIVE or not campaign.funds(candidate.screening_type_id):
            continue
        if not targeting.matches(
            candidate.patient,
            campaign,
            demographic=config.enable_demographic_targeting,
            geographic=config.enable_geographic_targeting,
            today=today,
        ):
            selection.targeting_mismatches += 1
            continue
        selection.targeting_matches += 1
        if ledger.available(campaign) >= price:
            eligible.append(campaign)

    if eligible:
        eligible.sort(key=lambda c: (
            -targeting.score(c, candidate.patient, today),
            c.specificity,
            -ledger.available(c),
            c.created_at,
        ))
        selection.campaign = eligible[0]
        logger.debug(
            "Selected targeted campaign",
            patient_id=candidate.patient_id,
            campaign_id=eligible[0].id,
            candidates=len(eligible),
        )
        return selection

    if (
        general_pool is not None
        and general_pool.status == CampaignStatus.ACTIVE
        and ledger.available(general_pool) >= price
    ):
        selection.campaign = general_pool
        selection.is_general_pool = True
        logger.debug(
            "Falling back to general pool",
            patient_id=candidate.patient_id,
            available=ledger.available(general_pool),
        )

    return selection
