from decimal import Decimal

import pytest
from httpx import AsyncClient

from tests.helpers import auth_headers, create_user


@pytest.mark.asyncio
async def test_record_collection_credits_pending_eiu(client: AsyncClient, session_factory, gateway):
    collector = await create_user(session_factory, "collector")
    citizen = await create_user(session_factory, "citizen")

    resp = await client.post(
        "/api/v1/collection/record",
        json={"citizen_id": str(citizen.id), "weight_grams": 1000, "notes": "PET bottles"},
        headers=auth_headers(collector),
    )

    assert resp.status_code == 201, resp.text
    payload = resp.json()
    assert Decimal(payload["eiu_earned"]) == Decimal("100")
    assert payload["transaction"]["status"] == "PENDING_BATCH"
    assert payload["transaction"]["collector_id"] == str(collector.id)
    assert Decimal(payload["transaction"]["eiu_fee"]) == Decimal("5")
    assert payload["message"] == "Successfully recorded 1000g collection. 100.0 EIU earned (pending verification)."
    assert (await gateway.get_user(citizen.id)).eiu_balance == Decimal("100")


@pytest.mark.asyncio
@pytest.mark.parametrize("weight", [5, 60000])
async def test_record_collection_weight_out_of_range(client: AsyncClient, session_factory, weight):
    collector = await create_user(session_factory, "collector")
    citizen = await create_user(session_factory, "citizen")

    resp = await client.post(
        "/api/v1/collection/record",
        json={"citizen_id": str(citizen.id), "weight_grams": weight},
        headers=auth_headers(collector),
    )

    assert resp.status_code == 400, resp.text
    assert resp.json()["error"]["code"] == "E003"


@pytest.mark.asyncio
async def test_record_collection_rejects_non_citizen(client: AsyncClient, session_factory):
    collector = await create_user(session_factory, "collector")
    recycler = await create_user(session_factory, "recycler")

    resp = await client.post(
        "/api/v1/collection/record",
        json={"citizen_id": str(recycler.id), "weight_grams": 500},
        headers=auth_headers(collector),
    )

    assert resp.status_code == 400, resp.text
    assert resp.json()["error"]["message"] == "Invalid citizen_id or user is not a citizen."


@pytest.mark.asyncio
async def test_record_collection_is_collector_only(client: AsyncClient, session_factory):
    recycler = await create_user(session_factory, "recycler")
    citizen = await create_user(session_factory, "citizen")

    resp = await client.post(
        "/api/v1/collection/record",
        json={"citizen_id": str(citizen.id), "weight_grams": 500},
        headers=auth_headers(recycler),
    )

    assert resp.status_code == 403, resp.text
    assert resp.json()["error"]["code"] == "E006"


@pytest.mark.asyncio
async def test_validation_error_envelope_returns_e009(client: AsyncClient, session_factory):
    collector = await create_user(session_factory, "collector")

    resp = await client.post("/api/v1/collection/record", json={}, headers=auth_headers(collector))

    assert resp.status_code == 422, resp.text
    payload = resp.json()
    assert payload["error"]["code"] == "E009"
    assert payload["error"]["message"]
    assert isinstance(payload["error"].get("details"), dict)
    assert isinstance(payload["error"]["details"].get("errors"), list)
