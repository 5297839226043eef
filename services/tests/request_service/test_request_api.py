from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from services.common import ServiceSettings
from services.request_service.app.main import create_app

REQUESTER_HEADERS = {"X-Actor-Id": "alice", "X-Actor-Roles": "staff"}
CLERK_HEADERS = {"X-Actor-Id": "bob", "X-Actor-Roles": "stockroom"}


def _build_app(database_url: str) -> FastAPI:
    settings = ServiceSettings(
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
        escalation_sweep_enabled=False,
    )
    return create_app(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield


@asynccontextmanager
async def _client(database_url: str):
    app = _build_app(database_url)
    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


async def _transition(client: AsyncClient, request_id: str, target: str, version: int, **extra):
    body = {"status": target, "expectedVersion": version, **extra}
    return await client.post(f"/requests/{request_id}/transitions", json=body, headers=CLERK_HEADERS)


@pytest.mark.asyncio
async def test_supply_order_flow_over_http(database_url: str) -> None:
    async with _client(database_url) as client:
        item_response = await client.post(
            "/inventory",
            json={"name": "Nitrile gloves", "minimumQuantity": 8, "initialQuantity": 10},
            headers=CLERK_HEADERS,
        )
        assert item_response.status_code == 201
        item = item_response.json()
        assert item["currentQuantity"] == 10
        assert item["stockStatus"] == "ok"

        rule_response = await client.post(
            "/rules",
            json={
                "name": "Medical supplies",
                "appliesToType": "supply-order",
                "priority": 10,
                "condition": {"field": "category", "operator": "equals", "value": "medical"},
                "assignToRole": "stockroom",
                "autoApprove": True,
            },
        )
        assert rule_response.status_code == 201
        rule = rule_response.json()

        create_response = await client.post(
            "/requests",
            json={
                "type": "supply-order",
                "title": "Gloves for clinic",
                "fields": {"category": "Medical"},
                "priority": "high",
                "lineItems": [{"itemId": item["id"], "quantity": 3}],
            },
            headers=REQUESTER_HEADERS,
        )
        assert create_response.status_code == 201
        created = create_response.json()
        assert created["status"] == "approved"
        assert created["autoApproved"] is True
        assert created["assignedRole"] == "stockroom"
        assert created["matchedRuleId"] == rule["id"]
        assert created["requesterId"] == "alice"
        assert created["version"] == 2
        request_id = created["id"]

        received = await _transition(client, request_id, "received", 2)
        assert received.status_code == 200
        assert received.json()["fulfillerId"] == "bob"
        assert (await _transition(client, request_id, "picking", 3)).status_code == 200

        ready = await _transition(client, request_id, "ready", 4)
        assert ready.status_code == 200
        assert ready.json()["lineItems"][0]["quantityFulfilled"] == 3

        stale = await _transition(client, request_id, "ready", 4)
        assert stale.status_code == 409

        completed = await _transition(client, request_id, "completed", 5, note="Picked up")
        assert completed.status_code == 200
        assert completed.json()["resolutionNote"] == "Picked up"

        archived = await client.post(
            f"/requests/{request_id}/archive", json={"expectedVersion": 6}, headers=REQUESTER_HEADERS
        )
        assert archived.status_code == 200
        assert archived.json()["archived"] is True

        history = await client.get(f"/requests/{request_id}/history")
        assert history.status_code == 200
        assert [change["toStatus"] for change in history.json()] == [
            "submitted",
            "approved",
            "received",
            "picking",
            "ready",
            "completed",
        ]

        stock = (await client.get(f"/inventory/{item['id']}")).json()
        assert stock["currentQuantity"] == 7
        assert stock["stockStatus"] == "low"

        ledger = await client.get(f"/inventory/{item['id']}/ledger")
        assert [entry["transactionType"] for entry in ledger.json()] == ["add", "fulfillment"]
        assert ledger.json()[1]["referenceId"] == request_id

        reconciliation = (await client.get(f"/inventory/{item['id']}/reconciliation")).json()
        assert reconciliation["consistent"] is True
        assert reconciliation["ledgerSum"] == 7

        listed = await client.get("/requests", params={"requesterId": "alice"})
        assert listed.json()["total"] == 0
        listed = await client.get("/requests", params={"requesterId": "alice", "includeArchived": "true"})
        assert listed.json()["total"] == 1


@pytest.mark.asyncio
async def test_guard_failures_map_to_http_errors(database_url: str) -> None:
    async with _client(database_url) as client:
        created = await client.post(
            "/requests",
            json={"type": "routed-form", "title": "Room booking", "fields": {"room": "B12"}},
            headers=REQUESTER_HEADERS,
        )
        assert created.status_code == 201
        body = created.json()
        assert body["status"] == "submitted"
        assert body["assignedRole"] is None

        illegal = await _transition(client, body["id"], "completed", 1)
        assert illegal.status_code == 409

        not_requester = await _transition(client, body["id"], "cancelled", 1)
        assert not_requester.status_code == 409

        unknown = await _transition(client, "does-not-exist", "under_review", 1)
        assert unknown.status_code == 404

        missing_actor = await client.post(
            "/requests", json={"type": "routed-form", "title": "Anonymous"}
        )
        assert missing_actor.status_code == 400

        system_actor = await client.post(
            "/requests",
            json={"type": "routed-form", "title": "Spoofed"},
            headers={"X-Actor-Id": "system"},
        )
        assert system_actor.status_code == 403

        missing_item = await client.post(
            "/requests",
            json={"type": "supply-order", "title": "Ghost", "lineItems": [{"itemId": 999, "quantity": 1}]},
            headers=REQUESTER_HEADERS,
        )
        assert missing_item.status_code == 404

        bad_payload = await client.post(
            "/requests",
            json={"type": "parking-permit", "title": "Unsupported"},
            headers=REQUESTER_HEADERS,
        )
        assert bad_payload.status_code == 422


@pytest.mark.asyncio
async def test_inventory_adjustments_over_http(database_url: str) -> None:
    async with _client(database_url) as client:
        item = (
            await client.post("/inventory", json={"name": "Light bulbs", "initialQuantity": 2}, headers=CLERK_HEADERS)
        ).json()

        duplicate = await client.post("/inventory", json={"name": "Light bulbs"}, headers=CLERK_HEADERS)
        assert duplicate.status_code == 409

        overdraw = await client.post(
            f"/inventory/{item['id']}/adjustments",
            json={"delta": -3, "transactionType": "remove"},
            headers=CLERK_HEADERS,
        )
        assert overdraw.status_code == 409

        wrong_sign = await client.post(
            f"/inventory/{item['id']}/adjustments",
            json={"delta": 3, "transactionType": "remove"},
            headers=CLERK_HEADERS,
        )
        assert wrong_sign.status_code == 400

        entry = await client.post(
            f"/inventory/{item['id']}/adjustments",
            json={"delta": -2, "transactionType": "remove", "notes": "Hallway fixtures"},
            headers=CLERK_HEADERS,
        )
        assert entry.status_code == 201
        assert entry.json()["resultingQuantity"] == 0
        assert entry.json()["sequence"] == 2

        out = (await client.get(f"/inventory/{item['id']}")).json()
        assert out["stockStatus"] == "out"

        missing = await client.get("/inventory/999/ledger")
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_rule_administration(database_url: str) -> None:
    async with _client(database_url) as client:
        malformed = await client.post(
            "/rules",
            json={"name": "Broken", "condition": {"field": "cost", "operator": "between", "value": 1}},
        )
        assert malformed.status_code == 400

        both = await client.post(
            "/rules", json={"name": "Both", "assignToRole": "a", "assignToPrincipal": "b"}
        )
        assert both.status_code == 422

        created = await client.post(
            "/rules",
            json={
                "name": "Locksmith",
                "appliesToType": "key-request",
                "priority": 5,
                "condition": {"any": [{"field": "building", "operator": "in", "value": ["North", "South"]}]},
                "assignToPrincipal": "locksmith-1",
                "escalationHours": 48,
            },
        )
        assert created.status_code == 201
        rule_id = created.json()["id"]

        evaluation = await client.post("/rules/evaluate", json={"type": "key-request", "fields": {"building": "north"}})
        assert evaluation.status_code == 200
        decision = evaluation.json()
        assert decision["matched"] is True
        assert decision["matchedRuleId"] == rule_id
        assert decision["assignedPrincipal"] == "locksmith-1"
        assert decision["escalationDeadline"] is not None

        updated = await client.patch(f"/rules/{rule_id}", json={"priority": 9})
        assert updated.status_code == 200
        assert updated.json()["priority"] == 9

        deactivated = await client.delete(f"/rules/{rule_id}")
        assert deactivated.status_code == 200
        assert deactivated.json()["isActive"] is False

        miss = await client.post("/rules/evaluate", json={"type": "key-request", "fields": {"building": "north"}})
        assert miss.json()["matched"] is False

        active = await client.get("/rules", params={"includeInactive": "false"})
        assert active.json() == []

        assert (await client.get("/rules/424242")).status_code == 404


@pytest.mark.asyncio
async def test_manual_sweep_and_health(database_url: str) -> None:
    async with _client(database_url) as client:
        health = await client.get("/health")
        assert health.status_code == 200
        assert health.json() == {"status": "ok", "escalationSweepRunning": False}

        sweep = await client.post("/escalations/sweep")
        assert sweep.status_code == 200
        assert sweep.json() == {"escalated": [], "count": 0}
