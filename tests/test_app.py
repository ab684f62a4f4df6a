# tests/test_app.py
import pytest

from backend.app import create_app
from backend.lib.settings import Settings
from backend.lib.water_meter_core.store import MemoryStore


class RecordingAlerts:
    topic_arn = "arn:aws:sns:us-east-1:123456789012:WaterMeterOperatorAlerts"

    def __init__(self):
        self.consistency = []
        self.negative = []
        self.subscribed = []

    def send_consistency_alert(self, issues):
        self.consistency.append(issues)
        return True

    def send_negative_consumption_alert(self, meter_id, previous_volume, new_volume):
        self.negative.append((meter_id, previous_volume, new_volume))
        return True

    def subscribe_email(self, email):
        self.subscribed.append(email)
        return "arn:aws:sns:us-east-1:123456789012:WaterMeterOperatorAlerts:sub-1"


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def app(alerts):
    app = create_app(settings=Settings(), store=MemoryStore(), alerts=alerts)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def make_customer(client, name="ana", device_ids=None):
    body = {"name": name, "email": f"{name}@example.com", "role": "customer"}
    if device_ids is not None:
        body["device_ids"] = device_ids
    resp = client.post("/api/users", json=body)
    assert resp.status_code == 201
    return resp.get_json()


def make_device(client, meter_id="MTR001", **extra):
    resp = client.post("/api/devices", json={"meter_id": meter_id, **extra})
    assert resp.status_code == 201
    return resp.get_json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "healthy"}


# -----------------------------------------------------------------------------
# ingress
# -----------------------------------------------------------------------------

def test_ingress_plain_text(client):
    device = make_device(client)

    resp = client.post("/api/meter-data/ingress", data="MTRID:MTR001;VOL:120.5;BATT:3.7V",
                       content_type="text/plain")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["state"] == "Updated"
    assert body["meter_id"] == "MTR001"
    assert body["response"] == "Device MTR001 updated successfully."
    stored = client.get(f"/api/devices/{device['device_id']}").get_json()
    assert stored["current_volume"] == 120.5
    assert stored["battery_voltage"] == "3.7V"


def test_ingress_json_message(client):
    make_device(client)

    resp = client.post("/api/meter-data/ingress", json={"message": "MTRID:MTR001;SIG:-80dBm"})

    assert resp.status_code == 200
    assert resp.get_json()["state"] == "Updated"


def test_ingress_ping(client):
    make_device(client)
    resp = client.post("/api/meter-data/ingress", data="MTRID:MTR001", content_type="text/plain")
    assert resp.status_code == 200
    assert resp.get_json()["state"] == "Acknowledged"


def test_ingress_empty_body(client):
    resp = client.post("/api/meter-data/ingress", data="", content_type="text/plain")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "No data string received."}


def test_ingress_missing_meter_id(client):
    resp = client.post("/api/meter-data/ingress", data="VOL:1", content_type="text/plain")
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["state"] == "Rejected"
    assert body["reason"] == "MalformedInput"


def test_ingress_unknown_meter(client):
    resp = client.post("/api/meter-data/ingress", data="MTRID:GHOST;VOL:1",
                       content_type="text/plain")
    assert resp.status_code == 404
    assert resp.get_json()["reason"] == "UnknownDevice"


def test_ingress_writes_command_logs(client):
    make_device(client)
    client.post("/api/meter-data/ingress", data="MTRID:MTR001;VOL:1", content_type="text/plain")
    client.post("/api/meter-data/ingress", data="MTRID:OTHER", content_type="text/plain")

    all_logs = client.get("/api/command-logs").get_json()["logs"]
    assert len(all_logs) == 2

    mine = client.get("/api/command-logs/device/MTR001").get_json()
    assert [l["status"] for l in mine["logs"]] == ["success_updated"]


# -----------------------------------------------------------------------------
# devices and users
# -----------------------------------------------------------------------------

def test_create_device_for_customer(client):
    ana = make_customer(client)
    device = make_device(client, owner_id=ana["user_id"])

    assert device["owner_id"] == ana["user_id"]
    user = client.get(f"/api/users/{ana['user_id']}").get_json()
    assert user["owned_device_ids"] == [device["device_id"]]


def test_create_device_for_technician_is_rejected(client):
    resp = client.post("/api/users", json={"name": "tom", "email": "tom@example.com",
                                           "role": "technician"})
    tech = resp.get_json()

    resp = client.post("/api/devices", json={"meter_id": "MTR009", "owner_id": tech["user_id"]})

    assert resp.status_code == 400
    assert "not customer" in resp.get_json()["error"]


def test_duplicate_meter_id(client):
    make_device(client)
    resp = client.post("/api/devices", json={"meter_id": "MTR001"})
    assert resp.status_code == 400


def test_create_device_requires_meter_id(client):
    resp = client.post("/api/devices", json={"notes": "no meter"})
    assert resp.status_code == 400


def test_reassign_through_device_update(client):
    ana = make_customer(client, "ana")
    ben = make_customer(client, "ben")
    device = make_device(client, owner_id=ana["user_id"])

    resp = client.put(f"/api/devices/{device['device_id']}", json={"owner_id": ben["user_id"]})

    assert resp.status_code == 200
    assert resp.get_json()["owner_id"] == ben["user_id"]
    assert client.get(f"/api/users/{ana['user_id']}").get_json()["owned_device_ids"] == []
    assert client.get(f"/api/users/{ben['user_id']}").get_json()["owned_device_ids"] == [
        device["device_id"]
    ]


def test_unassign_through_device_update(client):
    ana = make_customer(client)
    device = make_device(client, owner_id=ana["user_id"])

    resp = client.put(f"/api/devices/{device['device_id']}", json={"owner_id": None})

    assert resp.get_json()["owner_id"] is None
    assert client.get(f"/api/users/{ana['user_id']}").get_json()["owned_device_ids"] == []


def test_meter_id_cannot_change(client):
    device = make_device(client)
    resp = client.put(f"/api/devices/{device['device_id']}", json={"meter_id": "MTR002"})
    assert resp.status_code == 400


def test_unknown_device_field(client):
    device = make_device(client)
    resp = client.put(f"/api/devices/{device['device_id']}", json={"colour": "blue"})
    assert resp.status_code == 400


def test_update_requires_json_object(client):
    device = make_device(client)
    resp = client.put(f"/api/devices/{device['device_id']}", data="nope",
                      content_type="text/plain")
    assert resp.status_code == 400


def test_create_user_with_devices_steals(client):
    ana = make_customer(client, "ana")
    device = make_device(client, owner_id=ana["user_id"])

    ben = make_customer(client, "ben", device_ids=[device["device_id"]])

    assert ben["owned_device_ids"] == [device["device_id"]]
    assert client.get(f"/api/users/{ana['user_id']}").get_json()["owned_device_ids"] == []
    assert client.get(f"/api/devices/{device['device_id']}").get_json()["owner_id"] == ben["user_id"]


def test_create_user_validation(client):
    resp = client.post("/api/users", json={"name": "x", "role": "customer"})
    assert resp.status_code == 400
    make_customer(client, "ana")
    resp = client.post("/api/users", json={"name": "Ana 2", "email": "ANA@example.com",
                                           "role": "customer"})
    assert resp.status_code == 400


def test_role_change_unassigns_devices(client):
    ana = make_customer(client)
    device = make_device(client, owner_id=ana["user_id"])

    resp = client.put(f"/api/users/{ana['user_id']}", json={"role": "technician"})

    assert resp.status_code == 200
    assert resp.get_json()["role"] == "technician"
    assert resp.get_json()["owned_device_ids"] == []
    assert client.get(f"/api/devices/{device['device_id']}").get_json()["owner_id"] is None


def test_update_user_device_set(client):
    ana = make_customer(client)
    d1 = make_device(client, "MTR001", owner_id=ana["user_id"])
    d2 = make_device(client, "MTR002")

    resp = client.put(f"/api/users/{ana['user_id']}", json={"device_ids": [d2["device_id"]]})

    assert resp.get_json()["owned_device_ids"] == [d2["device_id"]]
    assert client.get(f"/api/devices/{d1['device_id']}").get_json()["owner_id"] is None


def test_delete_device_and_user(client):
    ana = make_customer(client)
    d1 = make_device(client, "MTR001", owner_id=ana["user_id"])
    d2 = make_device(client, "MTR002", owner_id=ana["user_id"])

    resp = client.delete(f"/api/devices/{d1['device_id']}")
    assert resp.get_json() == {"message": "Device removed"}
    assert client.get(f"/api/devices/{d1['device_id']}").status_code == 404
    assert client.get(f"/api/users/{ana['user_id']}").get_json()["owned_device_ids"] == [
        d2["device_id"]
    ]

    resp = client.delete(f"/api/users/{ana['user_id']}")
    assert resp.get_json() == {"message": "User removed"}
    assert client.get(f"/api/users/{ana['user_id']}").status_code == 404
    assert client.get(f"/api/devices/{d2['device_id']}").get_json()["owner_id"] is None


def test_unknown_ids_are_404(client):
    assert client.get("/api/devices/DEV-missing").status_code == 404
    assert client.get("/api/users/USR-missing").status_code == 404
    assert client.delete("/api/devices/DEV-missing").status_code == 404
    assert client.put("/api/users/USR-missing", json={"name": "x"}).status_code == 404


# -----------------------------------------------------------------------------
# readings
# -----------------------------------------------------------------------------

def test_readings_with_consumption(client, alerts):
    device = make_device(client)
    for volume in ("100", "104.5", "95"):
        client.post("/api/meter-data/ingress", data=f"MTRID:MTR001;VOL:{volume}",
                    content_type="text/plain")

    body = client.get(f"/api/devices/{device['device_id']}/readings").get_json()

    assert [r["volume"] for r in body["readings"]] == [100.0, 104.5, 95.0]
    assert [r["consumption"] for r in body["readings"]] == [None, 4.5, -9.5]
    assert body["readings"][2]["flags"] == ["negative_consumption"]
    assert alerts.negative == [("MTR001", 104.5, 95.0)]


def test_manual_reading(client):
    device = make_device(client)

    resp = client.post(f"/api/devices/{device['device_id']}/readings",
                       json={"volume": 12.5, "timestamp": "2025-11-01T08:00:00Z"})

    assert resp.status_code == 201
    assert resp.get_json()["source"] == "manual_entry"
    assert client.get(f"/api/devices/{device['device_id']}").get_json()["current_volume"] == 12.5


def test_manual_reading_validation(client):
    device = make_device(client)
    resp = client.post(f"/api/devices/{device['device_id']}/readings", json={})
    assert resp.status_code == 400
    resp = client.post("/api/devices/DEV-missing/readings", json={"volume": 1})
    assert resp.status_code == 404


# -----------------------------------------------------------------------------
# maintenance and status
# -----------------------------------------------------------------------------

def test_consistency_and_reconcile(app, client, alerts):
    ana = make_customer(client)
    device = make_device(client, owner_id=ana["user_id"])
    assert client.get("/api/maintenance/consistency").get_json() == {
        "consistent": True, "divergences": [],
    }

    # drop the set entry behind the manager's back
    user = app.store.get_user(ana["user_id"])
    user.owned_device_ids.clear()
    app.store.put_user(user, user.version)

    body = client.get("/api/maintenance/consistency").get_json()
    assert body["consistent"] is False
    assert body["divergences"] == [{
        "device_id": device["device_id"],
        "pointer_owner": ana["user_id"],
        "set_owners": [],
    }]
    assert len(alerts.consistency) == 1

    report = client.post("/api/maintenance/reconcile").get_json()
    assert report["users_repaired"] == [ana["user_id"]]
    assert client.get("/api/maintenance/consistency").get_json()["consistent"] is True


def test_status_endpoints(client):
    assert client.get("/dynamodb/status").get_json() == {
        "dynamodb_enabled": False, "table_prefix": None,
    }
    body = client.get("/sns/status").get_json()
    assert body["sns_enabled"] is True


def test_sns_subscribe(client, alerts):
    resp = client.post("/sns/subscribe", json={"email": "ops@example.com"})
    assert resp.status_code == 200
    assert alerts.subscribed == ["ops@example.com"]
    assert client.post("/sns/subscribe", json={}).status_code == 400


def test_sns_subscribe_without_sns():
    app = create_app(settings=Settings(), store=MemoryStore())
    resp = app.test_client().post("/sns/subscribe", json={"email": "ops@example.com"})
    assert resp.status_code == 400


def test_manual_reading_without_offset_is_utc(client):
    device = make_device(client)
    client.post("/api/meter-data/ingress", data="MTRID:MTR001;VOL:10", content_type="text/plain")

    resp = client.post(f"/api/devices/{device['device_id']}/readings",
                       json={"volume": 12, "timestamp": "2025-11-01T08:00:00"})
    assert resp.status_code == 201
    assert resp.get_json()["timestamp"] == "2025-11-01T08:00:00+00:00"

    resp = client.get(f"/api/devices/{device['device_id']}/readings")
    assert resp.status_code == 200
    # the manual reading is older than the ingested one
    assert [r["volume"] for r in resp.get_json()["readings"]] == [12.0, 10.0]
