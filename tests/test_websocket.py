"""Tests for the live topic WebSocket against the seeded demo fleet."""

CENTRAL_HOSPITAL = "demo-hospital-central"
PATIENT = {"X-User-Id": "demo-patient-1"}
EMERGENCY_BODY = {"location": {"coordinates": [77.5950, 12.9720], "address": "MG Road Metro"}}


def _receive_until(ws, event_type: str, limit: int = 10) -> dict:
    for _ in range(limit):
        data = ws.receive_json()
        if data["type"] == event_type:
            return data
    raise AssertionError(f"no {event_type} event received")


def test_websocket_rejects_unknown_topic(live_client):
    with live_client.websocket_connect("/ws/topics/everything") as ws:
        data = ws.receive_json()
        assert data["type"] == "error"
        assert "unknown topic" in data["message"].lower()


def test_websocket_acknowledges_subscription(live_client):
    with live_client.websocket_connect(f"/ws/topics/hospital_{CENTRAL_HOSPITAL}") as ws:
        assert ws.receive_json() == {"type": "subscribed", "topic": f"hospital_{CENTRAL_HOSPITAL}"}


def test_hospital_dashboard_receives_new_emergency(live_client):
    with live_client.websocket_connect(f"/ws/topics/hospital_{CENTRAL_HOSPITAL}") as ws:
        ws.receive_json()
        resp = live_client.post("/api/emergencies", json=EMERGENCY_BODY, headers=PATIENT)
        assert resp.status_code == 201
        emergency_id = resp.json()["emergency"]["id"]

        event = _receive_until(ws, "new_emergency")
        assert event["topic"] == f"hospital_{CENTRAL_HOSPITAL}"
        assert event["data"]["id"] == emergency_id


def test_emergency_room_receives_status_updates(live_client):
    resp = live_client.post("/api/emergencies", json=EMERGENCY_BODY, headers=PATIENT)
    emergency = resp.json()["emergency"]
    driver_id = live_client.get(f"/api/ambulances/{emergency['assigned_ambulance_id']}").json()["driver_id"]

    with live_client.websocket_connect(f"/ws/topics/emergency_{emergency['id']}") as ws:
        ws.receive_json()
        resp = live_client.put(
            f"/api/emergencies/{emergency['id']}/status",
            json={"status": "In Transit"},
            headers={"X-User-Id": driver_id},
        )
        assert resp.status_code == 200

        event = _receive_until(ws, "status_update")
        assert event["data"]["emergencyId"] == emergency["id"]
        assert event["data"]["status"] == "In Transit"
        assert event["data"]["updatedBy"] == driver_id


def test_emergency_room_receives_ambulance_position(live_client):
    resp = live_client.post("/api/emergencies", json=EMERGENCY_BODY, headers=PATIENT)
    emergency = resp.json()["emergency"]
    ambulance_id = emergency["assigned_ambulance_id"]
    driver_id = live_client.get(f"/api/ambulances/{ambulance_id}").json()["driver_id"]

    with live_client.websocket_connect(f"/ws/topics/emergency_{emergency['id']}") as ws:
        ws.receive_json()
        resp = live_client.put(
            f"/api/ambulances/{ambulance_id}/location",
            json={"coordinates": [77.5960, 12.9730], "address": "Brigade Road"},
            headers={"X-User-Id": driver_id},
        )
        assert resp.status_code == 200

        event = _receive_until(ws, "ambulance_location_update")
        assert event["data"]["location"] == [77.596, 12.973]
        assert event["data"]["address"] == "Brigade Road"
