"""
Shared fixtures for the clinic bot test suite.
The app is pointed at a throwaway SQLite file before it is imported, and the
WasenderAPI transport is always patched, so tests run offline.
"""

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="clinic_bot_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["WASENDER_ACCESS_TOKEN"] = "account-token"
os.environ["WASENDER_BASE_URL"] = "https://wasender.test/api"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from clinic_bot.db import engine
from clinic_bot.main import app
from clinic_bot.models import ClinicSetting, CustomKeyword, Service, User, WhatsappSession
from clinic_bot.tenants import resolve_tenant

WEBHOOK_SECRET = "whsec-clinic-one"


@pytest.fixture(autouse=True)
def fresh_tables():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def client():
    return TestClient(app)


def make_clinic(db, *, email="clinic@example.com", secret=WEBHOOK_SECRET, provider_id="101",
                language="bilingual", working_hours=None, services=(), keywords=()):
    user = User(
        email=email,
        password_hash="x",
        clinic_name="Smile Dental",
        clinic_address="12 Palm Street, Dubai",
        clinic_phone="+971 4 555 0100",
        language_preference=language,
        currency="AED",
    )
    setting = ClinicSetting(
        greeting_en="Welcome to Smile Dental!",
        greeting_ar="أهلاً بكم في عيادة الابتسامة!",
        working_hours=working_hours,
    )
    setting.services = [Service(**s) for s in services]
    setting.keywords = [CustomKeyword(**k) for k in keywords]
    user.clinic_setting = setting
    wa = WhatsappSession(
        session_id=provider_id,
        api_key=f"api-key-{provider_id}",
        webhook_secret=secret,
        phone_number="+971500000001",
        status="connected",
    )
    user.sessions = [wa]
    db.add(user)
    db.commit()
    db.refresh(wa)
    return wa


@pytest.fixture
def clinic(db):
    """A bilingual clinic with hours, one service and one custom keyword."""
    return make_clinic(
        db,
        working_hours={"monday": {"open": "09:00", "close": "17:00"}, "tuesday": {}},
        services=[{"name_en": "Cleaning", "name_ar": "تنظيف", "price": 50, "currency": "USD", "duration": 30}],
        keywords=[{"keyword": "help with insurance", "response_en": "We accept all major insurers.",
                   "response_ar": "نقبل جميع شركات التأمين الكبرى."}],
    )


@pytest.fixture
def tenant(db, clinic):
    return resolve_tenant(db, WEBHOOK_SECRET)


@pytest.fixture
def auth_headers(client):
    resp = client.post("/api/auth/register", json={
        "email": "owner@example.com",
        "password": "hunter22",
        "clinic_name": "Owner Clinic",
        "language_preference": "en",
    })
    assert resp.status_code == 201
    return {"Authorization": f"Bearer {resp.json()['token']}"}
