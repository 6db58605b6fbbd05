"""Tests for the allocation batch transaction and match notifications."""
import pytest
from sqlalchemy.exc import OperationalError

from screening_match.matching.committer import AllocationCommitter
from screening_match.matching.exceptions import AllocationCommitError
from screening_match.models.enums import NotificationType
from screening_match.models.matching import AllocationPlan
from tests.conftest import RecordingDispatcher


def plan_for(entry, patient, campaign, screening_type, **fields):
    return AllocationPlan(
        waitlist_id=entry.id,
        patient_id=patient.id,
        campaign_id=campaign.id,
        donor_id=campaign.donor_id,
        campaign_title=campaign.title,
        screening_type_id=screening_type.id,
        screening_type_name=screening_type.name,
        amount=screening_type.agreed_price,
        **fields,
    )


@pytest.fixture
async def execution_id(repository):
    return await repository.create_execution("EXEC_TEST_COMMIT", {})


async def test_commit_applies_whole_batch(repository, dispatcher, seed, execution_id):
    cervical = await seed.screening_type(price=5000.0)
    campaign = await seed.campaign([cervical], available=12000.0)
    patients = [await seed.patient(), await seed.patient()]
    entries = [await seed.waitlist(p, cervical) for p in patients]
    plans = [plan_for(e, p, campaign, cervical) for e, p in zip(entries, patients)]

    allocation_ids = await AllocationCommitter(repository, dispatcher).commit(execution_id, plans)

    assert len(allocation_ids) == 2
    stored = await seed.get_campaign(campaign.id)
    assert stored.available_amount == 2000.0
    assert stored.reserved_amount == 10000.0
    for entry in entries:
        assert (await seed.get_waitlist(entry.id)).status == "MATCHED"
    allocations = await seed.allocations()
    assert {a.id for a in allocations} == set(allocation_ids)
    assert all(a.matching_execution_id == execution_id and a.created_via_matching for a in allocations)


async def test_insufficient_funds_rolls_back_everything(repository, dispatcher, seed, execution_id):
    cervical = await seed.screening_type(price=5000.0)
    rich = await seed.campaign([cervical], available=10000.0)
    poor = await seed.campaign([cervical], available=1000.0)
    first, second = await seed.patient(), await seed.patient()
    first_entry = await seed.waitlist(first, cervical)
    second_entry = await seed.waitlist(second, cervical)
    plans = [
        plan_for(first_entry, first, rich, cervical),
        plan_for(second_entry, second, poor, cervical),
    ]

    with pytest.raises(AllocationCommitError):
        await AllocationCommitter(repository, dispatcher).commit(execution_id, plans)

    assert (await seed.get_campaign(rich.id)).available_amount == 10000.0
    assert (await seed.get_campaign(poor.id)).available_amount == 1000.0
    assert (await seed.get_waitlist(first_entry.id)).status == "PENDING"
    assert await seed.allocations() == []


async def test_entry_no_longer_pending_rolls_back(repository, dispatcher, seed, execution_id):
    cervical = await seed.screening_type(price=5000.0)
    campaign = await seed.campaign([cervical], available=10000.0)
    patient = await seed.patient()
    entry = await seed.waitlist(patient, cervical, status="CLAIMED")

    with pytest.raises(AllocationCommitError):
        await AllocationCommitter(repository, dispatcher).commit(
            execution_id, [plan_for(entry, patient, campaign, cervical)]
        )

    assert (await seed.get_campaign(campaign.id)).available_amount == 10000.0


async def test_notifies_patient_and_donor(repository, dispatcher, seed, execution_id):
    cervical = await seed.screening_type(price=5000.0)
    campaign = await seed.campaign([cervical], available=10000.0, donor_id="donor-42")
    patient = await seed.patient()
    entry = await seed.waitlist(patient, cervical)
    plans = [plan_for(entry, patient, campaign, cervical)]
    committer = AllocationCommitter(repository, dispatcher)

    allocation_ids = await committer.commit(execution_id, plans)
    sent, failures = await committer.notify(plans, allocation_ids)

    assert sent == 2
    assert failures == []
    patient_notice = dispatcher.of_type(NotificationType.MATCHED)[0]
    assert patient_notice["recipient_id"] == patient.id
    assert patient_notice["send_email"] is True
    assert "Cervical Cancer Screening" in patient_notice["message"]
    donor_notice = dispatcher.of_type(NotificationType.PATIENT_MATCHED)[0]
    assert donor_notice["recipient_id"] == "donor-42"
    assert donor_notice["data"]["allocation_id"] == allocation_ids[0]


async def test_notification_failure_reported_not_raised(repository, seed, execution_id):
    dispatcher = RecordingDispatcher(fail_types=[NotificationType.PATIENT_MATCHED])
    cervical = await seed.screening_type(price=5000.0)
    campaign = await seed.campaign([cervical], available=10000.0)
    patient = await seed.patient()
    entry = await seed.waitlist(patient, cervical)
    plans = [plan_for(entry, patient, campaign, cervical)]
    committer = AllocationCommitter(repository, dispatcher)

    allocation_ids = await committer.commit(execution_id, plans)
    sent, failures = await committer.notify(plans, allocation_ids)

    assert sent == 1
    assert len(failures) == 1
    assert (await seed.get_waitlist(entry.id)).status == "MATCHED"


async def test_empty_batch_is_noop(repository, dispatcher, execution_id):
    assert await AllocationCommitter(repository, dispatcher).commit(execution_id, []) == []


async def test_transient_lock_error_is_retried(repository, dispatcher, seed, execution_id, monkeypatch):
    cervical = await seed.screening_type(price=5000.0)
    campaign = await seed.campaign([cervical], available=10000.0)
    patient = await seed.patient()
    entry = await seed.waitlist(patient, cervical)
    original = repository.commit_allocation_batch
    attempts = []

    async def locked_once(execution_id, plans):
        attempts.append(1)
        if len(attempts) == 1:
            raise OperationalError("UPDATE campaigns", {}, Exception("database is locked"))
        return await original(execution_id, plans)

    monkeypatch.setattr(repository, "commit_allocation_batch", locked_once)

    allocation_ids = await AllocationCommitter(repository, dispatcher).commit(
        execution_id, [plan_for(entry, patient, campaign, cervical)]
    )

    assert len(attempts) == 2
    assert len(allocation_ids) == 1
    assert (await seed.get_campaign(campaign.id)).available_amount == 5000.0
