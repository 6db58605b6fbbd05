"""Tests for campaign selection and general pool fallback."""
from datetime import timedelta

import pytest

from screening_match.matching.ledger import FundLedger
from screening_match.matching.selector import select_campaign
from screening_match.models.matching import MatchingConfig
from tests.factories import BASE_TIME, BREAST, CERVICAL, make_campaign, make_candidate, make_patient


@pytest.fixture
def config():
    return MatchingConfig()


@pytest.fixture
def pool():
    return make_campaign(
        id="general-donor-pool",
        title="General Donor Pool",
        available_amount=50000.0,
        screening_type_ids=[CERVICAL.id, BREAST.id],
    )


def test_targeted_campaign_preferred_over_pool(config, pool):
    campaign = make_campaign(target_states=["Lagos"], available_amount=10000.0)

    selection = select_campaign(make_candidate(), [campaign], pool, config)

    assert selection.campaign.id == campaign.id
    assert not selection.is_general_pool
    assert selection.targeting_matches == 1


def test_falls_back_to_pool_when_campaign_underfunded(config, pool):
    campaign = make_campaign(target_states=["Lagos"], available_amount=3000.0)

    selection = select_campaign(make_candidate(), [campaign], pool, config)

    assert selection.campaign.id == pool.id
    assert selection.is_general_pool


def test_out_of_state_campaign_never_chosen(config, pool):
    kano = make_campaign(target_states=["Kano"], available_amount=100000.0)

    selection = select_campaign(make_candidate(), [kano], pool, config)

    assert selection.campaign.id == pool.id
    assert selection.targeting_mismatches == 1


def test_none_when_nothing_can_fund(config):
    poor_pool = make_campaign(id="general-donor-pool", available_amount=1000.0)
    campaign = make_campaign(available_amount=4999.0)

    selection = select_campaign(make_candidate(), [campaign], poor_pool, config)

    assert selection.campaign is None


def test_inactive_pool_not_used(config):
    pool = make_campaign(id="general-donor-pool", status="SUSPENDED")

    assert select_campaign(make_candidate(), [], pool, config).campaign is None


def test_inactive_or_unrelated_campaigns_ignored(config):
    suspended = make_campaign(status="SUSPENDED")
    other_type = make_campaign(screening_type_ids=[BREAST.id])

    assert select_campaign(make_candidate(), [suspended, other_type], None, config).campaign is None


def test_higher_score_wins(config):
    state_only = make_campaign(target_states=["Lagos"])
    state_and_lga = make_campaign(target_states=["Lagos"], target_lgas=["Ikeja"])

    selection = select_campaign(make_candidate(), [state_only, state_and_lga], None, config)

    assert selection.campaign.id == state_and_lga.id


def test_more_specific_campaign_wins_tie(config):
    broad = make_campaign(screening_type_ids=[CERVICAL.id, BREAST.id], available_amount=90000.0)
    focused = make_campaign(screening_type_ids=[CERVICAL.id], available_amount=10000.0)

    selection = select_campaign(make_candidate(), [broad, focused], None, config)

    assert selection.campaign.id == focused.id


def test_richer_then_older_campaign_wins_tie(config):
    poorer = make_campaign(available_amount=10000.0)
    richer = make_campaign(available_amount=20000.0)
    assert select_campaign(make_candidate(), [poorer, richer], None, config).campaign.id == richer.id

    newer = make_campaign(available_amount=20000.0, created_at=BASE_TIME + timedelta(days=1))
    older = make_campaign(available_amount=20000.0, created_at=BASE_TIME)
    assert select_campaign(make_candidate(), [newer, older], None, config).campaign.id == older.id


def test_pool_is_never_ranked_as_targeted_candidate(config, pool):
    selection = select_campaign(make_candidate(), [pool], pool, config)

    assert selection.is_general_pool
    assert selection.targeting_matches == 0


def test_ledger_balance_overrides_loaded_balance(config, pool):
    campaign = make_campaign(available_amount=10000.0)
    ledger = FundLedger([campaign, pool])
    ledger.reserve(campaign.id, 6000.0)

    selection = select_campaign(make_candidate(), [campaign], pool, config, ledger)

    assert selection.is_general_pool


def test_targeting_disabled_ignores_audience(pool):
    config = MatchingConfig(enable_demographic_targeting=False, enable_geographic_targeting=False)
    kano = make_campaign(target_states=["Kano"])

    selection = select_campaign(make_candidate(patient=make_patient(state="Lagos")), [kano], pool, config)

    assert selection.campaign.id == kano.id
