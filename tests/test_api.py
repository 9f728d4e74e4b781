import pytest
from starlette.testclient import TestClient

from conftest import FakeChannel, OWNER_ID, SUBSCRIBER_ID, OTHER_SUBSCRIBER_ID, auth_headers, make_token


def attendance(day="2024-01-01", meal="breakfast", subscriber_id=SUBSCRIBER_ID, price=50):
    return {"subscriber_id": subscriber_id, "subscriber_name": "Asha Rao", "meal_type": meal,
            "date": day, "price": price}


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_missing_and_bad_tokens_are_unauthorized(client):
    resp = await client.get("/api/attendance")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"

    resp = await client.get("/api/attendance", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Invalid token"

    expired = make_token(SUBSCRIBER_ID, expires_in=-60)
    resp = await client.get("/api/attendance", headers={"Authorization": f"Bearer {expired}"})
    assert resp.json()["error"]["message"] == "Token expired"


@pytest.mark.asyncio
async def test_record_attendance_requires_owner(client, user_headers):
    resp = await client.post("/api/attendance", json=attendance(), headers=user_headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


@pytest.mark.asyncio
async def test_record_then_duplicate_is_409(client, owner_headers):
    first = await client.post("/api/attendance", json=attendance(), headers=owner_headers)
    assert first.status_code == 201
    body = first.json()
    assert body["ok"] is True
    assert body["data"]["recorded_by"] == OWNER_ID

    dup = await client.post("/api/attendance", json=attendance(), headers=owner_headers)
    assert dup.status_code == 409
    err = dup.json()["error"]
    assert err["code"] == "conflict"
    assert "already recorded" in err["message"]


@pytest.mark.asyncio
async def test_schema_errors_use_validation_envelope(client, owner_headers):
    resp = await client.post("/api/attendance", json=attendance(subscriber_id="123"), headers=owner_headers)
    assert resp.status_code == 400
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "validation_error"
    assert any(d["field"] == "subscriber_id" for d in body["error"]["details"])


@pytest.mark.asyncio
async def test_bulk_duplicate_reports_entries(client, owner_headers):
    await client.post("/api/attendance", json=attendance("2024-01-02"), headers=owner_headers)
    resp = await client.post(
        "/api/attendance/bulk",
        json={"attendances": [attendance("2024-01-01"), attendance("2024-01-02")]},
        headers=owner_headers,
    )
    assert resp.status_code == 409
    details = resp.json()["error"]["details"]
    assert details == [{"index": 1, "entry": "Asha Rao - breakfast - 2024-01-02", "reason": "already recorded"}]


@pytest.mark.asyncio
async def test_user_sees_only_own_attendance(client, owner_headers, user_headers):
    await client.post(
        "/api/attendance/bulk",
        json={"attendances": [attendance(), attendance(subscriber_id=OTHER_SUBSCRIBER_ID)]},
        headers=owner_headers,
    )

    own = await client.get("/api/attendance", headers=user_headers)
    assert own.status_code == 200
    items = own.json()["data"]["items"]
    assert [i["subscriber_id"] for i in items] == [SUBSCRIBER_ID]

    other = await client.get(f"/api/attendance?subscriber_id={OTHER_SUBSCRIBER_ID}", headers=user_headers)
    assert other.status_code == 403

    everyone = await client.get("/api/attendance", headers=owner_headers)
    assert everyone.json()["data"]["pagination"]["total"] == 2


@pytest.mark.asyncio
async def test_bill_flow_over_http(client, owner_headers, user_headers):
    resp = await client.post(
        "/api/attendance/bulk",
        json={"attendances": [attendance(f"2024-01-{d:02d}", "lunch") for d in range(1, 21)]},
        headers=owner_headers,
    )
    record_ids = [r["id"] for r in resp.json()["data"]["attendances"]]

    generated = await client.post(
        "/api/bills/generate",
        json={"subscriber_id": SUBSCRIBER_ID, "subscriber_name": "Asha Rao",
              "start_date": "2024-01-01", "end_date": "2024-01-31"},
        headers=owner_headers,
    )
    assert generated.status_code == 201
    bill = generated.json()["data"]
    assert bill["bill_number"] == "BILL000001"
    assert bill["total_meals"] == 20
    assert bill["total_amount"] == 1000.0

    await client.delete(f"/api/attendance/{record_ids[0]}", headers=owner_headers)

    view = await client.get(f"/api/bills/{bill['id']}", headers=user_headers)
    assert view.status_code == 200
    data = view.json()["data"]
    assert data["snapshot_total_amount"] == 1000.0
    assert data["active_total_amount"] == 950.0
    assert data["active_total_meals"] == 19
    assert len(data["removed_items"]) == 1

    download = await client.get(f"/api/bills/{bill['id']}/download", headers=user_headers)
    assert download.json()["data"]["lines"] == [{"meal_type": "lunch", "count": 19, "amount": 950.0}]

    status = await client.patch(f"/api/bills/{bill['id']}/status", json={"status": "sent"}, headers=owner_headers)
    assert status.json()["data"]["status"] == "sent"

    forbidden = await client.get(f"/api/bills/{bill['id']}", headers=auth_headers(OTHER_SUBSCRIBER_ID))
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_generate_empty_window_is_404(client, owner_headers):
    resp = await client.post(
        "/api/bills/generate",
        json={"subscriber_id": SUBSCRIBER_ID, "subscriber_name": "Asha Rao",
              "start_date": "2024-01-01", "end_date": "2024-01-31"},
        headers=owner_headers,
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_subscription_lifecycle_over_http(client, owner_headers, user_headers):
    created = await client.post(
        "/api/subscriptions",
        json={"subscriber_id": SUBSCRIBER_ID, "subscriber_name": "Asha Rao", "plan": "weekly",
              "start_date": "2024-01-01", "end_date": "2024-01-08", "price": 700},
        headers=owner_headers,
    )
    assert created.status_code == 201
    sub = created.json()["data"]
    assert sub["meals_included"] == 7

    paused = await client.patch(f"/api/subscriptions/{sub['id']}/status", json={"status": "paused"},
                                headers=owner_headers)
    assert paused.json()["data"]["status"] == "paused"

    swept = await client.post("/api/subscriptions/auto-expire", headers=owner_headers)
    assert swept.json()["data"]["expired_ids"] == [sub["id"]]

    resume = await client.patch(f"/api/subscriptions/{sub['id']}/status", json={"status": "active"},
                                headers=owner_headers)
    assert resume.status_code == 409

    mine = await client.get("/api/subscriptions", headers=user_headers)
    assert mine.json()["data"]["items"][0]["status"] == "expired"

    stats = await client.get("/api/subscriptions/stats/summary", headers=user_headers)
    assert stats.status_code == 403


@pytest.mark.asyncio
async def test_notifications_over_http(client, owner_headers, user_headers, registry):
    channel = FakeChannel()
    await registry.register(SUBSCRIBER_ID, channel)

    sent = await client.post(
        "/api/notifications",
        json={"subscriber_id": SUBSCRIBER_ID, "subscriber_name": "Asha Rao",
              "title": "Holiday", "message": "Kitchen closed on Monday", "type": "menu"},
        headers=owner_headers,
    )
    assert sent.status_code == 201
    assert channel.sent[0]["data"]["title"] == "Holiday"

    count = await client.get(f"/api/notifications/count/{SUBSCRIBER_ID}", headers=user_headers)
    assert count.json()["data"]["unread"] == 1

    read_all = await client.patch(f"/api/notifications/subscriber/{SUBSCRIBER_ID}/read-all", headers=user_headers)
    assert read_all.json()["data"]["updated"] == 1

    listing = await client.get(f"/api/notifications/subscriber/{SUBSCRIBER_ID}", headers=user_headers)
    assert listing.json()["data"][0]["read"] is True

    other = await client.get(f"/api/notifications/subscriber/{OTHER_SUBSCRIBER_ID}", headers=user_headers)
    assert other.status_code == 403


# ---------------- WebSocket ---------------- #

def test_websocket_query_token_and_ping():
    from main import create_app

    with TestClient(create_app()).websocket_connect(f"/ws/notifications?token={make_token(SUBSCRIBER_ID)}") as ws:
        assert ws.receive_json() == {"type": "connected", "subscriber_id": SUBSCRIBER_ID}
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_websocket_auth_message():
    from main import create_app

    with TestClient(create_app()).websocket_connect("/ws/notifications") as ws:
        ws.send_json({"type": "auth", "token": make_token(SUBSCRIBER_ID)})
        assert ws.receive_json()["type"] == "connected"


def test_websocket_rejects_bad_token():
    from main import create_app

    with TestClient(create_app()).websocket_connect("/ws/notifications?token=garbage") as ws:
        frame = ws.receive_json()
        assert frame == {"type": "error", "message": "Invalid token"}
