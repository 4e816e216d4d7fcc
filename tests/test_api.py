"""
Dashboard API tests: auth, clinic settings, WhatsApp session management.
Provider calls are patched at clinic_bot.wasender.
"""

from unittest.mock import patch

from sqlmodel import select

from clinic_bot.models import Message, WhatsappSession
from clinic_bot.wasender import WasenderError
from tests.conftest import make_clinic


class TestAuth:

    def test_register_returns_token_and_user(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "Dr@Example.com", "password": "secret1", "clinic_name": "Bright Teeth",
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["token"]
        assert body["user"]["email"] == "dr@example.com"
        assert body["user"]["clinic_name"] == "Bright Teeth"

    def test_register_seeds_default_greetings(self, client, auth_headers):
        body = client.get("/api/clinic-settings", headers=auth_headers).json()
        assert body["greeting_en"].startswith("Hello! Welcome to our dental clinic.")
        assert body["greeting_ar"]
        assert body["services"] == []
        assert body["keywords"] == []

    def test_register_validation(self, client):
        assert client.post("/api/auth/register", json={"email": "a@b.c"}).status_code == 400
        short = {"email": "a@b.c", "password": "123", "clinic_name": "X"}
        assert client.post("/api/auth/register", json=short).status_code == 400
        bad_lang = {"email": "a@b.c", "password": "123456", "clinic_name": "X", "language_preference": "fr"}
        assert client.post("/api/auth/register", json=bad_lang).status_code == 400

    def test_duplicate_email_conflict(self, client, auth_headers):
        resp = client.post("/api/auth/register", json={
            "email": "owner@example.com", "password": "another1", "clinic_name": "Copy",
        })
        assert resp.status_code == 409

    def test_login(self, client, auth_headers):
        ok = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "hunter22"})
        assert ok.status_code == 200
        assert ok.json()["token"]
        bad = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "wrong!"})
        assert bad.status_code == 401

    def test_me(self, client, auth_headers):
        resp = client.get("/api/auth/me", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["clinic_name"] == "Owner Clinic"

    def test_auth_required(self, client):
        assert client.get("/api/auth/me").status_code == 401
        assert client.get("/api/auth/me", headers={"Authorization": "Token abc"}).status_code == 401
        assert client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


class TestClinicSettings:

    def test_update(self, client, auth_headers):
        resp = client.put("/api/clinic-settings", headers=auth_headers, json={
            "greeting_en": "Hi from Owner Clinic",
            "working_hours": {"monday": {"open": "08:00", "close": "16:00"}},
            "clinic_address": "1 Harbour Road",
            "language_preference": "bilingual",
            "currency": "AED",
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["greeting_en"] == "Hi from Owner Clinic"
        assert body["working_hours"]["monday"]["open"] == "08:00"
        assert body["clinic_address"] == "1 Harbour Road"
        assert body["language_preference"] == "bilingual"
        assert body["currency"] == "AED"

    def test_update_rejects_bad_hours(self, client, auth_headers):
        resp = client.put("/api/clinic-settings", headers=auth_headers, json={"working_hours": {"monday": "9-5"}})
        assert resp.status_code == 400

    def test_services(self, client, auth_headers):
        resp = client.post("/api/clinic-settings/services", headers=auth_headers, json={
            "name_en": "Whitening", "name_ar": "تبييض", "price": 120, "duration": 45,
        })
        assert resp.status_code == 201
        service_id = resp.json()["id"]
        listed = client.get("/api/clinic-settings", headers=auth_headers).json()["services"]
        assert [s["name_en"] for s in listed] == ["Whitening"]

        assert client.delete(f"/api/clinic-settings/services/{service_id}", headers=auth_headers).status_code == 200
        assert client.get("/api/clinic-settings", headers=auth_headers).json()["services"] == []
        assert client.delete(f"/api/clinic-settings/services/{service_id}", headers=auth_headers).status_code == 404

    def test_service_validation(self, client, auth_headers):
        resp = client.post("/api/clinic-settings/services", headers=auth_headers, json={"name_en": "X", "price": "free"})
        assert resp.status_code == 400

    def test_keywords(self, client, auth_headers):
        resp = client.post("/api/clinic-settings/keywords", headers=auth_headers, json={
            "keyword": "parking", "response_en": "Free parking in the basement.",
        })
        assert resp.status_code == 201
        keyword_id = resp.json()["id"]
        assert client.delete(f"/api/clinic-settings/keywords/{keyword_id}", headers=auth_headers).status_code == 200
        assert client.post("/api/clinic-settings/keywords", headers=auth_headers,
                           json={"keyword": "  "}).status_code == 400


PROVIDER_SESSION = {"id": 555, "api_key": "api-key-555", "webhook_secret": "whsec-555", "status": "need_scan"}


class TestWhatsappSessions:

    def _create(self, client, auth_headers):
        with patch("clinic_bot.wasender.create_session", return_value=dict(PROVIDER_SESSION)) as create:
            resp = client.post("/api/whatsapp-sessions", headers=auth_headers, json={
                "name": "Front desk", "phone_number": "+971500000009",
            })
        assert resp.status_code == 201
        return resp.json()["session"], create

    def test_create(self, client, db, auth_headers):
        session, create = self._create(client, auth_headers)
        token, payload = create.call_args.args
        assert token == "account-token"
        assert payload["webhook_url"].endswith("/api/webhook")
        assert session["session_id"] == "555"
        assert session["status"] == "connecting"
        assert "api_key" not in session

        stored = db.get(WhatsappSession, session["id"])
        assert stored.api_key == "api-key-555"
        assert stored.webhook_secret == "whsec-555"

    def test_create_requires_fields(self, client, auth_headers):
        assert client.post("/api/whatsapp-sessions", headers=auth_headers, json={"name": "x"}).status_code == 400

    def test_create_provider_failure(self, client, auth_headers):
        with patch("clinic_bot.wasender.create_session", side_effect=WasenderError("nope", 422)):
            resp = client.post("/api/whatsapp-sessions", headers=auth_headers, json={
                "name": "Front desk", "phone_number": "+971500000009",
            })
        assert resp.status_code == 502

    def test_list_and_live_status(self, client, auth_headers):
        session, _ = self._create(client, auth_headers)
        assert [s["id"] for s in client.get("/api/whatsapp-sessions", headers=auth_headers).json()] == [session["id"]]

        with patch("clinic_bot.wasender.get_session_status", return_value={"status": "connected"}):
            live = client.get(f"/api/whatsapp-sessions/{session['id']}", headers=auth_headers).json()
        assert live["status"] == "connected"

        with patch("clinic_bot.wasender.get_session_status", side_effect=WasenderError("timeout")):
            stale = client.get(f"/api/whatsapp-sessions/{session['id']}", headers=auth_headers)
        assert stale.status_code == 200
        assert stale.json()["status"] == "connected"

    def test_connect_and_qrcode(self, client, auth_headers):
        session, _ = self._create(client, auth_headers)
        with patch("clinic_bot.wasender.connect_session", return_value={"status": "NEED_SCAN"}):
            resp = client.post(f"/api/whatsapp-sessions/{session['id']}/connect", headers=auth_headers)
        assert resp.json()["session"]["status"] == "connecting"

        with patch("clinic_bot.wasender.get_qr_code", return_value={"qrCode": "2@abc"}):
            resp = client.get(f"/api/whatsapp-sessions/{session['id']}/qrcode", headers=auth_headers)
        assert resp.json()["qrCode"] == "2@abc"

    def test_messages_newest_first(self, client, db, auth_headers):
        session, _ = self._create(client, auth_headers)
        for i in range(3):
            db.add(Message(whatsapp_session_id=session["id"], sender_number="1", recipient_number="2",
                           content=f"m{i}", direction="inbound", status="received"))
        db.commit()
        rows = client.get(f"/api/whatsapp-sessions/{session['id']}/messages?limit=2", headers=auth_headers).json()
        assert [r["content"] for r in rows] == ["m2", "m1"]

    def test_delete_removes_messages(self, client, db, auth_headers):
        session, _ = self._create(client, auth_headers)
        db.add(Message(whatsapp_session_id=session["id"], sender_number="1", recipient_number="2",
                       content="hi", direction="inbound", status="received"))
        db.commit()

        with patch("clinic_bot.wasender.disconnect_session", side_effect=WasenderError("gone")) as disconnect:
            resp = client.delete(f"/api/whatsapp-sessions/{session['id']}", headers=auth_headers)
        assert resp.status_code == 200
        disconnect.assert_called_once_with("api-key-555", "555")

        db.expire_all()
        assert db.get(WhatsappSession, session["id"]) is None
        assert db.exec(select(Message)).all() == []

    def test_other_clinics_session_hidden(self, client, db, auth_headers):
        other = make_clinic(db, email="other@example.com")
        assert client.get(f"/api/whatsapp-sessions/{other.id}", headers=auth_headers).status_code == 404
        assert client.delete(f"/api/whatsapp-sessions/{other.id}", headers=auth_headers).status_code == 404
