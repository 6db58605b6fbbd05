"""Tests for the matching API routes."""
import pytest
from httpx import AsyncClient, ASGITransport

from screening_match.api.routes.matching import get_orchestrator
from screening_match.main import app
from tests.conftest import NOW


@pytest.fixture
async def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def seed_match(seed):
    cervical = await seed.screening_type("Cervical Cancer Screening", 5000.0)
    await seed.campaign([cervical], available=100000.0)
    patient = await seed.patient()
    await seed.waitlist(patient, cervical)
    return patient


async def test_trigger_without_body(client, seed):
    await seed_match(seed)

    response = await client.post("/api/v1/matching/trigger")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["execution_ref"].startswith("EXEC_")
    assert data["summary"]["successful_matches"] == 1


async def test_trigger_with_overrides(client, seed):
    await seed_match(seed)

    response = await client.post(
        "/api/v1/matching/trigger",
        json={"patients_per_screening_type": 10, "enable_geographic_targeting": False},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True


@pytest.mark.parametrize("body", [
    {"patients_per_screening_type": 0},
    {"max_total_patients": 5000},
    {"max_concurrent_screening_types": 11},
    {"allocation_expiry_days": 400},
    {"unknown_option": True},
])
async def test_trigger_rejects_invalid_overrides(client, body):
    response = await client.post("/api/v1/matching/trigger", json=body)

    assert response.status_code == 422


async def test_list_and_get_executions(client, orchestrator, seed):
    await seed_match(seed)
    first = await orchestrator.run(now=NOW)
    await orchestrator.run(now=NOW)

    response = await client.get("/api/v1/matching/executions", params={"page_size": 1})
    assert response.status_code == 200
    listing = response.json()
    assert listing["total"] == 2
    assert listing["total_pages"] == 2
    assert len(listing["executions"]) == 1

    response = await client.get("/api/v1/matching/executions", params={"status": "FAILED"})
    assert response.json()["total"] == 0

    response = await client.get(f"/api/v1/matching/executions/{first.execution_id}")
    assert response.status_code == 200
    detail = response.json()
    assert detail["execution_reference"] == first.execution_ref
    assert len(detail["screening_type_results"]) == 1


async def test_unknown_execution_returns_404(client):
    assert (await client.get("/api/v1/matching/executions/missing")).status_code == 404
    assert (await client.get("/api/v1/matching/executions/missing/logs")).status_code == 404


async def test_execution_logs_filter(client, orchestrator, seed):
    patient = await seed_match(seed)
    result = await orchestrator.run(now=NOW)

    response = await client.get(
        f"/api/v1/matching/executions/{result.execution_id}/logs",
        params={"patient_id": patient.id, "level": "INFO"},
    )

    assert response.status_code == 200
    logs = response.json()
    assert logs["total"] == 1
    assert logs["logs"][0]["patient_id"] == patient.id


async def test_logs_page_size_bounded(client, orchestrator):
    result = await orchestrator.run(now=NOW)

    response = await client.get(
        f"/api/v1/matching/executions/{result.execution_id}/logs", params={"page_size": 101}
    )

    assert response.status_code == 422


async def test_config_reports_defaults(client, settings):
    response = await client.get("/api/v1/matching/config")

    assert response.status_code == 200
    data = response.json()
    assert data["patients_per_screening_type"] == settings.waitlist_batch_size
    assert data["allocation_expiry_days"] == settings.waitlist_expiry_days


async def test_health_after_successful_run(client, orchestrator, seed):
    await seed_match(seed)
    await orchestrator.run(now=NOW)

    response = await client.get("/api/v1/matching/health")

    assert response.status_code == 200
    health = response.json()
    assert health["status"] == "healthy"
    assert health["total_executions"] == 1
    assert health["success_rate"] == 100.0
    assert health["pending_waitlist_count"] == 0
    assert health["total_allocations"] == 1
