from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from clinicdesk_shared import install_error_handlers, RequestIDMiddleware


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)
    install_error_handlers(app)

    @app.get("/http-500")
    def _http_500():
        raise HTTPException(status_code=500, detail="sqlite3.OperationalError: database is locked")

    @app.get("/crash")
    def _crash():
        raise RuntimeError("secret connection string")

    @app.get("/missing")
    def _missing():
        raise HTTPException(status_code=404, detail="patient not found")

    return app


def test_http_5xx_details_are_scrubbed_in_prod(monkeypatch):
    # In prod/staging, HTTP 5xx details must not leak implementation info.
    monkeypatch.setenv("ENV", "prod")
    client = TestClient(_app(), raise_server_exceptions=False)

    resp = client.get("/http-500")
    assert resp.status_code == 500
    body = resp.json()
    assert body.get("detail") == "internal error"
    assert body.get("request_id")

    resp = client.get("/crash")
    assert resp.status_code == 500
    assert resp.json().get("detail") == "internal error"


def test_4xx_details_and_dev_errors_pass_through(monkeypatch):
    monkeypatch.setenv("ENV", "dev")
    client = TestClient(_app(), raise_server_exceptions=False)

    resp = client.get("/missing", headers={"X-Request-ID": "abc"})
    assert resp.status_code == 404
    assert resp.json() == {"detail": "patient not found", "request_id": "abc"}

    resp = client.get("/http-500")
    assert resp.json().get("detail") == "sqlite3.OperationalError: database is locked"
