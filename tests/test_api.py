import httpx
import pytest

from services.order.app import main


@pytest.fixture
async def client(session_factory, redis):
    async def override_session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_session] = override_session
    main.app.dependency_overrides[main.get_redis] = lambda: redis
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    main.app.dependency_overrides.clear()


async def create(client, **overrides):
    body = {"client_id": "client-9", "items": [{"item_id": "A", "quantity": 2}], **overrides}
    resp = await client.post("/commands/orders", json=body, headers={"X-Actor": "client-9"})
    assert resp.status_code == 201
    return resp.json()


async def test_order_lifecycle_over_http(client):
    order = await create(client)
    order_id = order["id"]

    resp = await client.post(
        f"/commands/orders/{order_id}/pricing",
        json={"items": [{"item_id": "A", "unit_price": "10.50"}]},
    )
    assert resp.status_code == 200
    assert resp.json()["order_status"] == "WAITING_CLIENT_APPROVAL"
    assert resp.json()["total"] == "21.00"

    resp = await client.post(f"/commands/orders/{order_id}/payment", json={"status": "PAID"})
    assert resp.json()["order_status"] == "PAYMENT_CLEARED"
    assert resp.json()["warnings"] == []

    assert (await client.post(f"/commands/orders/{order_id}/dispatch")).json()["order_status"] == "IN_TRANSIT"
    assert (await client.post(f"/commands/orders/{order_id}/deliver")).json()["order_status"] == "DELIVERED"

    resp = await client.post(f"/commands/orders/{order_id}/cancel")
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "InvalidTransition",
        "message": "Invalid transition from DELIVERED to CLOSED",
        "current": "DELIVERED",
        "requested": "CLOSED",
    }

    log = (await client.get(f"/queries/orders/{order_id}/audit-log")).json()
    assert [e["changed_by"] for e in log] == ["client-9", "ADMIN", "ADMIN", "ADMIN", "ADMIN"]


async def test_payment_warning_is_returned(client):
    order = await create(client)

    resp = await client.post(f"/commands/orders/{order['id']}/payment", json={"status": "PAID"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["payment_status"] == "PAID"
    assert body["order_status"] == "NEW_INQUIRY"
    assert len(body["warnings"]) == 1


async def test_actor_header_is_recorded(client):
    order = await create(client)
    await client.post(
        f"/commands/orders/{order['id']}/credit-due-date",
        json={"date": "2026-11-30T00:00:00Z"},
        headers={"X-Actor": "alice"},
    )

    log = (await client.get(f"/queries/orders/{order['id']}/audit-log")).json()
    assert log[-1]["changed_by"] == "alice"
    assert log[-1]["action"] == "UPDATED"


async def test_manual_sweep(client):
    order = await create(client, credit_due_date="2026-01-01T00:00:00Z")

    resp = await client.post("/commands/sweeps/credit", json={"now": "2026-02-01T00:00:00Z"})

    assert resp.json() == {"transitioned": [order["id"]]}
    fetched = (await client.get(f"/queries/orders/{order['id']}")).json()
    assert fetched["order_status"] == "CLOSED"


async def test_queries(client):
    order = await create(client)

    inquiries = (await client.get("/queries/inquiries")).json()
    assert [o["id"] for o in inquiries] == [order["id"]]
    closed = (await client.get("/queries/orders", params={"status": "CLOSED"})).json()
    assert closed == []


async def test_unknown_order_returns_404(client):
    resp = await client.get("/queries/orders/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFound"


async def test_unknown_catalog_item_returns_404(client):
    resp = await client.post(
        "/commands/orders",
        json={"client_id": "client-9", "items": [{"item_id": "NOPE", "quantity": 1}]},
    )
    assert resp.status_code == 404


async def test_health(client):
    assert (await client.get("/health")).json() == {"status": "ok", "service": "order-service"}
