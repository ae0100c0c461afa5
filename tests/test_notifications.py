from __future__ import annotations

import json

import httpx
import pytest

import apps.clinic.app.events as events  # type: ignore[import]
import apps.clinic.app.notifications as notifications  # type: ignore[import]
import apps.clinic.app.notify_worker as notify_worker  # type: ignore[import]


class _Resp:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            req = httpx.Request("POST", "https://provider.test")
            raise httpx.HTTPStatusError("provider error", request=req, response=httpx.Response(self.status_code, request=req))


@pytest.fixture()
def http_calls(monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return _Resp(200)

    monkeypatch.setattr(notifications.httpx, "post", fake_post)
    return calls


@pytest.mark.parametrize(
    "value,ok",
    [("a@example.com", True), (" a@b.co ", True), ("a@b", False), ("a b@c.com", False), ("", False), (None, False)],
)
def test_email_validation(value, ok):
    assert notifications.is_valid_email(value) is ok


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("(555) 123-4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("61412345678", "+61412345678"),
        ("123", None),
        ("", None),
    ],
)
def test_phone_formatting(raw, expected):
    assert notifications.format_phone_number(raw) == expected
    assert notifications.is_valid_phone_number(raw) is (expected is not None)


def test_unconfigured_providers_do_not_send(monkeypatch, http_calls):
    for key in ("RESEND_API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER"):
        monkeypatch.delenv(key, raising=False)
    assert notifications.send_email("a@example.com", "", "transfer-requested", {})["success"] is False
    assert notifications.send_sms("+15551234567", "transfer-requested", {})["success"] is False
    assert http_calls == []


def test_invalid_destinations_are_refused(monkeypatch, http_calls):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    out = notifications.send_email("nope", "Hi", "transfer-accepted", {})
    assert out == {"success": False, "error": "invalid email address"}
    assert notifications.send_sms("12", "transfer-accepted", {})["success"] is False
    assert http_calls == []


def test_send_email_posts_to_resend(monkeypatch, http_calls):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    monkeypatch.setenv("RESEND_FROM_EMAIL", "clinic@example.com")
    data = {"patientName": "Jordan <b>", "patientId": "CSS-0001", "toTherapist": "Dr. B"}
    out = notifications.send_email("b@example.com", "", "transfer-accepted", data)
    assert out == {"success": True}
    url, kwargs = http_calls[0]
    assert url == notifications.RESEND_API_URL
    assert kwargs["headers"]["Authorization"] == "Bearer re_test"
    body = kwargs["json"]
    assert body["from"] == "clinic@example.com"
    assert body["to"] == ["b@example.com"]
    assert body["subject"] == "Transfer Request Accepted - Jordan <b>"
    assert "Jordan &lt;b&gt;" in body["html"]


def test_send_sms_posts_to_twilio(monkeypatch, http_calls):
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")
    monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+15550000000")
    out = notifications.send_sms("555-123-4567", "transfer-requested", {"patientName": "Jordan", "requestedBy": "Dr. A"})
    assert out == {"success": True}
    url, kwargs = http_calls[0]
    assert url.endswith("/Accounts/AC123/Messages.json")
    assert kwargs["auth"] == ("AC123", "tok")
    assert kwargs["data"]["To"] == "+15551234567"
    assert kwargs["data"]["Body"].startswith("Dr. A has requested to transfer Jordan")


def test_provider_errors_are_reported_not_raised(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")

    def refused(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(notifications.httpx, "post", refused)
    out = notifications.send_email("a@example.com", "", "transfer-rejected", {})
    assert out["success"] is False
    assert "connection refused" in out["error"]

    monkeypatch.setattr(notifications.httpx, "post", lambda url, **kw: _Resp(500))
    assert notifications.send_email("a@example.com", "", "transfer-rejected", {})["success"] is False


def test_build_jobs_and_deliver(monkeypatch):
    jobs = notifications.build_jobs("patient-transferred", {"patientName": "J"}, email="a@example.com", phone="+15551234567")
    assert [j["channel"] for j in jobs] == ["email", "sms"]
    assert jobs[0]["subject"] == "Patient Transferred - J"
    assert notifications.build_jobs("patient-transferred", {}) == []

    seen = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, template, data: seen.append(to) or {"success": True})
    assert notifications.deliver(jobs[0]) == {"success": True}
    assert seen == ["a@example.com"]
    assert notifications.deliver({"channel": "pigeon"})["success"] is False

    def crash(*a, **kw):
        raise ValueError("bad template")

    monkeypatch.setattr(notifications, "send_sms", crash)
    assert notifications.deliver(jobs[1])["success"] is False


def test_publish_delivers_in_process_when_events_disabled(monkeypatch):
    delivered = []
    monkeypatch.setattr(events, "_publisher", events.EventPublisher())
    monkeypatch.setattr(notifications, "deliver", lambda job: delivered.append(job) or {"success": True})
    results = events.publish_notifications([{"channel": "email", "to": "a@example.com", "template": "t", "data": {}}])
    assert results == [{"success": True}]
    assert len(delivered) == 1


def test_publish_goes_to_redis_when_enabled(monkeypatch):
    published = []

    class _FakeRedis:
        def publish(self, channel, message):
            published.append((channel, json.loads(message)))
            return 1

    monkeypatch.setenv("EVENTS_ENABLED", "true")
    monkeypatch.setattr(events.redis, "from_url", lambda url: _FakeRedis())
    monkeypatch.setattr(events, "_publisher", events.EventPublisher())
    monkeypatch.setattr(notifications, "deliver", lambda job: pytest.fail("should not deliver in-process"))

    job = {"channel": "sms", "to": "+15551234567", "template": "transfer-requested", "data": {}}
    assert events.publish_notifications([job]) == [{"queued": True}]
    channel, data = published[0]
    assert channel == "events:clinic"
    assert (data["domain"], data["type"], data["payload"]) == ("clinic", "notify", job)


def test_worker_delivers_notify_events(monkeypatch):
    delivered = []
    monkeypatch.setattr(notify_worker, "deliver", lambda job: delivered.append(job) or {"success": False, "error": "x"})
    job = {"channel": "email", "to": "a@example.com", "template": "t", "data": {}}
    msg = {"type": "message", "channel": b"events:clinic", "data": json.dumps({"type": "notify", "payload": job}).encode()}
    assert notify_worker.handle_message(msg) is True
    assert delivered == [job]

    assert notify_worker.handle_message({"type": "message", "data": b"not json"}) is False
    assert notify_worker.handle_message({"type": "subscribe", "data": 1}) is False
    assert notify_worker.handle_message({"type": "message", "data": json.dumps({"type": "other"})}) is False
    assert len(delivered) == 1
