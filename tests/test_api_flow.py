from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient

from app import ExternalClients, create_app
from conftest import FakeMeetingClient, FakeMessagingClient, FakePaymentClient, build_test_settings


ADMIN_TOKEN = "secret-admin-token"
SCHEDULER_KEY = "scheduler-key"


def _build_test_app(tmp_path, *, meetings=True, payments=None):
    settings = build_test_settings(
        tmp_path,
        "api_flow.db",
        admin_token=ADMIN_TOKEN,
        scheduler_api_key=SCHEDULER_KEY,
    )
    messaging = FakeMessagingClient()
    clients = ExternalClients(
        messaging=messaging,
        meetings=FakeMeetingClient() if meetings else None,
        payments=payments,
    )
    return create_app(settings, clients), messaging


def _event_date(days: int = 5) -> str:
    today = datetime.now(ZoneInfo("Asia/Kolkata")).date()
    return (today + timedelta(days=days)).isoformat()


def _login(client: TestClient) -> dict[str, str]:
    response = client.post("/login", json={"admin_token": ADMIN_TOKEN})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_event_lifecycle_end_to_end(tmp_path):
    app, messaging = _build_test_app(tmp_path)
    scheduler = {"Authorization": f"Bearer {SCHEDULER_KEY}"}

    with TestClient(app) as client:
        unauthenticated = client.post(
            "/facilitators",
            json={"name": "Kavya", "mobile_number": "9100000001"},
        )
        assert unauthenticated.status_code == 401

        admin = _login(client)
        facilitator_ids = []
        for index, name in enumerate(["Kavya", "Arjun"], start=1):
            response = client.post(
                "/facilitators",
                json={"name": name, "mobile_number": f"910000000{index}"},
                headers=admin,
            )
            assert response.status_code == 201
            facilitator_ids.append(response.json()["facilitator_id"])

        duplicate = client.post(
            "/facilitators",
            json={"name": "Again", "mobile_number": "+91 9100000001"},
            headers=admin,
        )
        assert duplicate.status_code == 409

        created = client.post(
            "/events",
            json={
                "title": "Sunrise Yoga",
                "category": "yoga",
                "event_date": _event_date(),
                "event_time": "7:00 AM - 8:00 AM",
                "pool_capacity": 2,
                "facilitator_ids": facilitator_ids,
            },
            headers=admin,
        )
        assert created.status_code == 201
        event_id = created.json()["event_id"]
        assert created.json()["pools_assigned"] is False

        for index in range(1, 4):
            mobile = f"920000000{index}"
            registrant = client.post(
                "/registrants",
                json={"name": f"Member {index}", "mobile_number": mobile},
            )
            assert registrant.status_code == 200
            registered = client.post(f"/events/{event_id}/register", json={"mobile_number": mobile})
            assert registered.status_code == 201

        again = client.post(f"/events/{event_id}/register", json={"mobile_number": "9200000001"})
        assert again.status_code == 409
        stranger = client.post(f"/events/{event_id}/register", json={"mobile_number": "9333333333"})
        assert stranger.status_code == 404

        assert client.post(f"/events/{event_id}/assign-pools").status_code == 401
        assigned = client.post(f"/events/{event_id}/assign-pools", headers=scheduler)
        assert assigned.status_code == 200
        pools = assigned.json()["results"][0]["details"]["pools"]
        assert [pool["user_count"] for pool in pools] == [2, 1]

        repeat = client.post(f"/events/{event_id}/assign-pools", headers=scheduler)
        assert repeat.status_code == 409

        client.post("/registrants", json={"name": "Late", "mobile_number": "9200000009"})
        late = client.post(f"/events/{event_id}/register", json={"mobile_number": "9200000009"})
        assert late.status_code == 409

        detail = client.get(f"/events/{event_id}", headers=admin)
        assert detail.status_code == 200
        assert detail.json()["event"]["pools_assigned"] is True
        assert sum(len(pool["attendees"]) for pool in detail.json()["pools"]) == 3

        reminders = client.get("/scheduler/reminders?run_type=morning", headers=scheduler)
        assert reminders.status_code == 200
        assert reminders.json()["run_type"] == "morning"
        assert (reminders.json()["processed"], reminders.json()["skipped"]) == (1, 1)

        unified = client.post("/scheduler/unified", headers=scheduler)
        assert unified.status_code == 200
        assert unified.json()["assignment"]["processed"] == 0
        assert unified.json()["reminders"]["processed"] == 1

        drained = client.post("/notifications/drain", json={}, headers=scheduler)
        assert drained.status_code == 200
        assert drained.json()["processed"] == 0

        listed = client.get("/events?upcoming=true", headers=admin)
        assert [item["event_id"] for item in listed.json()] == [event_id]

    # 3 confirmations, 3 registrant pool messages and 2 facilitator pool messages.
    assert len(messaging.sent) == 8


def test_assignment_without_meeting_provider_returns_bad_gateway(tmp_path):
    # Open-ended events are only batch-assigned the day before they run.
    app, _ = _build_test_app(tmp_path, meetings=False)
    scheduler = {"Authorization": f"Bearer {SCHEDULER_KEY}"}

    with TestClient(app) as client:
        admin = _login(client)
        facilitator = client.post(
            "/facilitators",
            json={"name": "Kavya", "mobile_number": "9100000001"},
            headers=admin,
        ).json()
        event = client.post(
            "/events",
            json={
                "title": "Evening HIIT",
                "category": "hiit",
                "event_date": _event_date(days=1),
                "event_time": "6 PM - 7 PM",
                "facilitator_ids": [facilitator["facilitator_id"]],
            },
            headers=admin,
        ).json()
        client.post("/registrants", json={"name": "Member", "mobile_number": "9200000001"})
        client.post(f"/events/{event['event_id']}/register", json={"mobile_number": "9200000001"})

        response = client.post(f"/events/{event['event_id']}/assign-pools", headers=scheduler)
        assert response.status_code == 502

        batch = client.get("/scheduler/assign-pools", headers=scheduler)
        assert batch.status_code == 200
        assert (batch.json()["processed"], batch.json()["failed"]) == (1, 1)

        missing = client.post("/events/999/assign-pools", headers=scheduler)
        assert missing.status_code == 404


def test_login_rejects_invalid_admin_token(tmp_path):
    app, _ = _build_test_app(tmp_path)
    with TestClient(app) as client:
        response = client.post("/login", json={"admin_token": "wrong-token"})
    assert response.status_code == 401


def test_scheduler_rejects_wrong_key(tmp_path):
    app, _ = _build_test_app(tmp_path)
    with TestClient(app) as client:
        response = client.get("/scheduler/reminders", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def _create_event(client: TestClient, admin: dict[str, str], **overrides) -> dict:
    facilitator = client.post(
        "/facilitators",
        json={"name": "Kavya", "mobile_number": "9100000001"},
        headers=admin,
    ).json()
    body = {
        "title": "Power Pilates",
        "category": "pilates",
        "event_date": _event_date(),
        "event_time": "7:00 AM - 8:00 AM",
        "facilitator_ids": [facilitator["facilitator_id"]],
    }
    body.update(overrides)
    response = client.post("/events", json=body, headers=admin)
    assert response.status_code == 201
    return response.json()


def test_payment_order_route(tmp_path):
    payments = FakePaymentClient()
    app, _ = _build_test_app(tmp_path, payments=payments)

    with TestClient(app) as client:
        admin = _login(client)
        event = _create_event(client, admin, price=499.0)
        client.post("/registrants", json={"name": "Member", "mobile_number": "9200000001"})
        path = f"/events/{event['event_id']}/order"

        created = client.post(path, json={"mobile_number": "9200000001", "amount": 49900})
        assert created.status_code == 201
        assert created.json() == {"order_id": "order_1", "amount": 49900, "currency": "INR"}

        mismatch = client.post(path, json={"mobile_number": "9200000001", "amount": 100})
        assert mismatch.status_code == 400
        unknown = client.post(path, json={"mobile_number": "9333333333", "amount": 49900})
        assert unknown.status_code == 404
        missing = client.post("/events/999/order", json={"mobile_number": "9200000001", "amount": 49900})
        assert missing.status_code == 404

    assert len(payments.orders) == 1


def test_payment_order_without_gateway_is_bad_gateway(tmp_path):
    app, _ = _build_test_app(tmp_path)

    with TestClient(app) as client:
        admin = _login(client)
        event = _create_event(client, admin, price=499.0)
        client.post("/registrants", json={"name": "Member", "mobile_number": "9200000001"})

        response = client.post(
            f"/events/{event['event_id']}/order",
            json={"mobile_number": "9200000001", "amount": 49900},
        )
    assert response.status_code == 502


def test_event_update_and_delete_routes(tmp_path):
    app, _ = _build_test_app(tmp_path)
    scheduler = {"Authorization": f"Bearer {SCHEDULER_KEY}"}

    with TestClient(app) as client:
        admin = _login(client)
        event = _create_event(client, admin)
        path = f"/events/{event['event_id']}"
        update = {
            "title": "Power Pilates II",
            "category": "pilates",
            "event_date": _event_date(days=6),
            "event_time": "8:00 AM - 9:00 AM",
            "max_capacity": 30,
        }

        assert client.put(path, json=update).status_code == 401
        updated = client.put(path, json=update, headers=admin)
        assert updated.status_code == 200
        assert (updated.json()["title"], updated.json()["max_capacity"]) == ("Power Pilates II", 30)
        assert client.put("/events/999", json=update, headers=admin).status_code == 404
        bad_roster = client.put(path, json={**update, "facilitator_ids": [999]}, headers=admin)
        assert bad_roster.status_code == 400

        client.post("/registrants", json={"name": "Member", "mobile_number": "9200000001"})
        client.post(f"{path}/register", json={"mobile_number": "9200000001"})
        assert client.delete(path, headers=admin).status_code == 409

        client.post(f"{path}/assign-pools", headers=scheduler)
        locked = client.put(path, json=update, headers=admin)
        assert locked.status_code == 409

        roster = [item["facilitator_id"] for item in client.get(path, headers=admin).json()["facilitators"]]
        spare = client.post("/events", json={**update, "facilitator_ids": roster}, headers=admin).json()
        assert client.delete(f"/events/{spare['event_id']}", headers=admin).status_code == 204
        assert client.get(f"/events/{spare['event_id']}", headers=admin).status_code == 404
        assert client.delete("/events/999", headers=admin).status_code == 404


def test_registrant_lookup_routes(tmp_path):
    app, _ = _build_test_app(tmp_path)

    with TestClient(app) as client:
        admin = _login(client)
        for index in (1, 2):
            client.post(
                "/registrants",
                json={"name": f"Member {index}", "mobile_number": f"920000000{index}"},
            )

        assert client.get("/registrants").status_code == 401
        listed = client.get("/registrants", headers=admin)
        assert [item["mobile_number"] for item in listed.json()] == ["9200000002", "9200000001"]

        found = client.get("/registrants/919200000001", headers=admin)
        assert found.status_code == 200
        assert found.json()["name"] == "Member 1"
        assert client.get("/registrants/9333333333", headers=admin).status_code == 404
