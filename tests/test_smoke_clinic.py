from __future__ import annotations

"""
Smoke tests over HTTP: the app is wired, health responds and the actor
header is enforced on transfer endpoints.
"""

import uuid


def test_root_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"
    assert data.get("service") == "Clinic API"
    assert data.get("components") == {"db": "ok"}


def test_request_id_is_echoed(client):
    resp = client.get("/health", headers={"X-Request-ID": "rid-123"})
    assert resp.headers.get("X-Request-ID") == "rid-123"


def test_transfer_endpoints_require_staff_header(client):
    resp = client.get("/transfers/pending")
    assert resp.status_code == 401
    body = resp.json()
    assert body["detail"] == "X-Staff-Id header required"
    assert body.get("request_id")


def test_transfer_flow_over_http(client):
    suffix = uuid.uuid4().hex[:8]
    a = client.post("/staff", json={"id": f"a-{suffix}", "name": "Dr. A"}).json()
    b = client.post("/staff", json={"id": f"b-{suffix}", "name": "Dr. B"}).json()
    p = client.post("/patients", json={"name": "Jordan", "assigned_staff_id": a["id"]}).json()
    resp = client.put(
        f"/staff/{b['id']}/availability",
        json={"2025-06-10": {"enabled": True, "slots": [{"start": "09:00", "end": "10:00"}]}},
    )
    assert resp.status_code == 200
    resp = client.post(
        "/appointments",
        json={"patient_id": p["id"], "staff_id": a["id"], "date": "2025-06-10", "time": "09:00", "duration": 30},
    )
    assert resp.status_code == 200

    resp = client.post("/transfers", json={"patient_id": p["id"], "to_staff_id": a["id"]}, headers={"X-Staff-Id": a["id"]})
    assert resp.status_code == 400

    resp = client.post("/transfers", json={"patient_id": p["id"], "to_staff_id": b["id"]}, headers={"X-Staff-Id": a["id"]})
    assert resp.status_code == 200
    tr = resp.json()["transfer"]
    assert tr["status"] == "pending"

    resp = client.post(f"/transfers/{tr['id']}/accept", headers={"X-Staff-Id": a["id"]})
    assert resp.status_code == 403

    resp = client.post(f"/transfers/{tr['id']}/accept", headers={"X-Staff-Id": b["id"]})
    assert resp.status_code == 200
    assert resp.json()["transfer"]["status"] == "accepted"

    appts = client.get("/appointments", params={"patient_id": p["id"]}).json()
    assert [x["staff_id"] for x in appts] == [b["id"]]
    assert client.get(f"/staff/{a['id']}/availability").json()["availability"] == {}
