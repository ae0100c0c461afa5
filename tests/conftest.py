import os
import tempfile

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DB_URL", "sqlite+pysqlite:///" + os.path.join(tempfile.mkdtemp(prefix="clinicdesk-"), "clinic.db"))
for _key in ("EVENTS_ENABLED", "RESEND_API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER"):
    os.environ.pop(_key, None)


@pytest.fixture(scope="session")
def app():
    """
    Import the clinic FastAPI app once per test session.
    """
    from apps.clinic.app.main import app as clinic_app

    return clinic_app


@pytest.fixture()
def client(app):
    """
    TestClient with startup hooks run, so the tables exist.
    """
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def clinic_engine():
    """
    Isolated in-memory SQLite engine built from the clinic models. Endpoint
    functions are called directly with a Session bound to it.
    """
    import apps.clinic.app.main as clinic  # type: ignore[import]

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
    )
    clinic.Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def sent_jobs(monkeypatch):
    """
    Capture email/SMS jobs handed off after commit instead of delivering them.
    """
    import apps.clinic.app.main as clinic  # type: ignore[import]

    jobs = []
    monkeypatch.setattr(clinic, "publish_notifications", lambda batch: jobs.extend(batch) or [])
    return jobs
