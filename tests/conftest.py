"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database file per test with all tables created
- A repository and orchestrator bound to that database
- A recording notification dispatcher
- Seed helpers for patients, screening types, campaigns, waitlists and allocations
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest
from sqlalchemy import insert, select

from screening_match.config.settings import Settings
from screening_match.matching.orchestrator import MatchingOrchestrator
from screening_match.models.enums import NotificationType
from screening_match.storage.database import build_engine, build_session_factory, init_db
from screening_match.storage.models import (
    DonationAllocationModel,
    DonationCampaignModel,
    NotificationModel,
    PatientModel,
    ScreeningTypeModel,
    WaitlistModel,
    campaign_screening_types,
)
from screening_match.storage.repository import MatchingRepository

GENERAL_POOL_ID = "general-donor-pool"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Doubles
# =============================================================================

class RecordingDispatcher:
    """Keeps every notification in memory; optionally fails for chosen types."""

    def __init__(self, fail_types: Sequence[NotificationType] = ()):
        self.sent: List[Dict[str, Any]] = []
        self.fail_types = set(fail_types)

    async def notify(self, type, title, message, recipient_ids, data=None, send_email=False):
        if type in self.fail_types:
            raise RuntimeError(f"{type.value} delivery unavailable")
        for recipient_id in recipient_ids:
            self.sent.append({
                "type": type,
                "title": title,
                "message": message,
                "recipient_id": recipient_id,
                "data": data or {},
                "send_email": send_email,
            })

    def of_type(self, type: NotificationType) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["type"] == type]


# =============================================================================
# Seed helpers
# =============================================================================

class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, row):
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)
        return row

    async def screening_type(self, name: str = "Cervical Cancer Screening", price: float = 5000.0, **fields):
        return await self._add(ScreeningTypeModel(name=name, agreed_price=price, **fields))

    async def patient(self, **fields):
        defaults = {
            "full_name": "Test Patient",
            "age": 35,
            "gender": "FEMALE",
            "state": "Lagos",
            "lga": "Ikeja",
            "monthly_income": 50000.0,
        }
        defaults.update(fields)
        return await self._add(PatientModel(**defaults))

    async def campaign(
        self,
        screening_types: Sequence[ScreeningTypeModel],
        available: float,
        status: str = "ACTIVE",
        created_at: Optional[datetime] = None,
        **fields,
    ):
        row = DonationCampaignModel(
            donor_id=fields.pop("donor_id", "donor-1"),
            title=fields.pop("title", "Test Campaign"),
            initial_amount=available,
            available_amount=available,
            reserved_amount=0.0,
            status=status,
            created_at=created_at or NOW - timedelta(days=60),
            **fields,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
                if screening_types:
                    await session.execute(insert(campaign_screening_types).values([
                        {"campaign_id": row.id, "screening_type_id": st.id} for st in screening_types
                    ]))
        return row

    async def general_pool(self, screening_types: Sequence[ScreeningTypeModel], available: float = 50000.0, **fields):
        return await self.campaign(
            screening_types,
            available,
            id=GENERAL_POOL_ID,
            title="General Donor Pool",
            donor_id="admin",
            created_at=NOW - timedelta(days=365),
            **fields,
        )

    async def waitlist(self, patient, screening_type, joined_at: Optional[datetime] = None, status: str = "PENDING"):
        return await self._add(WaitlistModel(
            patient_id=patient.id,
            screening_type_id=screening_type.id,
            status=status,
            joined_at=joined_at or NOW - timedelta(days=1),
        ))

    async def allocation(self, waitlist, campaign, amount: float, claimed_at: Optional[datetime] = None):
        return await self._add(DonationAllocationModel(
            waitlist_id=waitlist.id,
            patient_id=waitlist.patient_id,
            campaign_id=campaign.id,
            amount_allocated=amount,
            claimed_at=claimed_at,
        ))

    async def matched(self, patient, screening_type, campaign, amount: Optional[float] = None,
                      joined_at: Optional[datetime] = None):
        """A MATCHED waitlist entry with its allocation; funds already moved to reserved."""
        amount = amount if amount is not None else screening_type.agreed_price
        entry = await self.waitlist(patient, screening_type, joined_at=joined_at, status="MATCHED")
        await self.allocation(entry, campaign, amount)
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(DonationCampaignModel, campaign.id)
                row.available_amount -= amount
                row.reserved_amount += amount
        return entry

    async def get_campaign(self, campaign_id: str) -> DonationCampaignModel:
        async with self.session_factory() as session:
            return await session.get(DonationCampaignModel, campaign_id)

    async def get_waitlist(self, waitlist_id: str) -> WaitlistModel:
        async with self.session_factory() as session:
            return await session.get(WaitlistModel, waitlist_id)

    async def allocations(self, patient_id: Optional[str] = None) -> List[DonationAllocationModel]:
        stmt = select(DonationAllocationModel)
        if patient_id:
            stmt = stmt.where(DonationAllocationModel.patient_id == patient_id)
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def notifications(self) -> List[NotificationModel]:
        async with self.session_factory() as session:
            return list((await session.execute(select(NotificationModel))).scalars().all())


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def repository(session_factory):
    return MatchingRepository(session_factory)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        general_pool_campaign_id=GENERAL_POOL_ID,
        waitlist_run_timeout_seconds=0,
    )


@pytest.fixture
def orchestrator(repository, dispatcher, settings):
    return MatchingOrchestrator(repository=repository, dispatcher=dispatcher, settings=settings)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
