import logging
from typing import Optional

from fastapi import FastAPI, Request, Depends, HTTPException, Header, Body
from fastapi.responses import JSONResponse
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from . import wasender
from .auth import InvalidToken, create_access_token, decode_access_token, hash_password, verify_password
from .db import get_session, init_db
from .models import (
    ClinicSetting, CustomKeyword, Message, Service, SessionStatus, User, WhatsappSession, utcnow,
)
from .responder import DEFAULT_GREETING, AR, EN
from .settings import load_settings
from .signature import SIGNATURE_HEADER
from .webhook import InvalidEnvelope, SignatureRejected, ingest, parse_envelope

# ----------------- App & Settings -----------------
settings = load_settings()

logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic WhatsApp Bot")
init_db()

LANGUAGES = ("en", "ar", "bilingual")

# provider status words -> ours
_PROVIDER_STATUS = {
    "need_scan": SessionStatus.connecting,
    "logged_out": SessionStatus.disconnected,
    "expired": SessionStatus.disconnected,
}

def coerce_session_status(value, fallback: SessionStatus = SessionStatus.pending) -> str:
    if not value:
        return fallback.value
    word = str(value).strip().lower()
    if word in SessionStatus.__members__:
        return word
    return _PROVIDER_STATUS.get(word, SessionStatus.error).value

# ----------------- Auth helper -----------------
def current_user(
    authorization: str = Header(None),
    session: Session = Depends(get_session),
) -> User:
    if not authorization:
        raise HTTPException(401, "Access token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(401, "Bearer token expected")
    try:
        uid = decode_access_token(token, settings.jwt_secret)
    except InvalidToken:
        raise HTTPException(401, "Invalid or expired token")
    u = session.get(User, uid)
    if not u or not u.is_active:
        raise HTTPException(401, "Invalid token - user not found")
    return u

def _user_out(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "clinic_name": u.clinic_name,
        "clinic_address": u.clinic_address,
        "clinic_phone": u.clinic_phone,
        "language_preference": u.language_preference,
        "currency": u.currency,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat(),
    }

# ----------------- Health -----------------
@app.get("/health")
def health():
    return {"ok": True}

# ----------------- Auth APIs -----------------
@app.post("/api/auth/register", status_code=201)
def register(data: dict = Body(...), session: Session = Depends(get_session)):
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    clinic_name = (data.get("clinic_name") or "").strip()
    if not email or not password or not clinic_name:
        raise HTTPException(400, "Email, password, and clinic name are required")
    if len(password) < 6:
        raise HTTPException(400, "Password must be at least 6 characters")
    language = data.get("language_preference")
    if language is not None and language not in LANGUAGES:
        raise HTTPException(400, f"language_preference must be one of {', '.join(LANGUAGES)}")

    if session.exec(select(User).where(User.email == email)).first():
        raise HTTPException(409, "User with this email already exists")

    u = User(
        email=email,
        password_hash=hash_password(password),
        clinic_name=clinic_name,
        clinic_address=data.get("clinic_address"),
        clinic_phone=data.get("clinic_phone"),
        language_preference=language,
        currency=data.get("currency"),
    )
    # every account gets its bot settings up front
    u.clinic_setting = ClinicSetting(greeting_en=DEFAULT_GREETING[EN], greeting_ar=DEFAULT_GREETING[AR])
    session.add(u); session.commit(); session.refresh(u)
    logger.info("registered clinic account %s", u.id)

    token = create_access_token(str(u.id), settings.jwt_secret, settings.jwt_expire_minutes)
    return {"message": "User registered successfully", "token": token, "user": _user_out(u)}

@app.post("/api/auth/login")
def login(data: dict = Body(...), session: Session = Depends(get_session)):
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        raise HTTPException(400, "Email and password are required")

    u = session.exec(select(User).where(User.email == email)).first()
    if not u or not verify_password(password, u.password_hash):
        raise HTTPException(401, "Invalid credentials")

    token = create_access_token(str(u.id), settings.jwt_secret, settings.jwt_expire_minutes)
    return {"message": "Login successful", "token": token, "user": _user_out(u)}

@app.get("/api/auth/me")
def me(u: User = Depends(current_user)):
    return _user_out(u)

# ----------------- Clinic settings -----------------
def _clinic_setting(u: User, session: Session) -> ClinicSetting:
    cs = session.exec(select(ClinicSetting).where(ClinicSetting.user_id == u.id)).first()
    if cs is None:
        cs = ClinicSetting(user_id=u.id, greeting_en=DEFAULT_GREETING[EN], greeting_ar=DEFAULT_GREETING[AR])
        session.add(cs); session.commit(); session.refresh(cs)
    return cs

def _service_out(s: Service) -> dict:
    return {
        "id": s.id, "name_en": s.name_en, "name_ar": s.name_ar,
        "description_en": s.description_en, "description_ar": s.description_ar,
        "price": s.price, "currency": s.currency, "duration": s.duration,
    }

def _keyword_out(k: CustomKeyword) -> dict:
    return {"id": k.id, "keyword": k.keyword, "response_en": k.response_en, "response_ar": k.response_ar}

def _settings_out(u: User, cs: ClinicSetting) -> dict:
    return {
        "greeting_en": cs.greeting_en,
        "greeting_ar": cs.greeting_ar,
        "working_hours": cs.working_hours or {},
        "clinic_address": u.clinic_address,
        "clinic_phone": u.clinic_phone,
        "language_preference": u.language_preference,
        "currency": u.currency,
        "services": [_service_out(s) for s in cs.services],
        "keywords": [_keyword_out(k) for k in cs.keywords],
    }

def _check_working_hours(hours) -> dict:
    if not isinstance(hours, dict):
        raise HTTPException(400, "working_hours must be an object of day -> {open, close}")
    for day, slot in hours.items():
        if not isinstance(slot, dict):
            raise HTTPException(400, f"working_hours.{day} must be an object")
    return hours

@app.get("/api/clinic-settings")
def get_clinic_settings(u: User = Depends(current_user), session: Session = Depends(get_session)):
    return _settings_out(u, _clinic_setting(u, session))

@app.put("/api/clinic-settings")
def update_clinic_settings(
    data: dict = Body(...),
    u: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    cs = _clinic_setting(u, session)
    for f in ("greeting_en", "greeting_ar"):
        if f in data:
            setattr(cs, f, data[f])
    if "working_hours" in data:
        cs.working_hours = _check_working_hours(data["working_hours"]) if data["working_hours"] else None
    if "language_preference" in data:
        if data["language_preference"] not in (None,) + LANGUAGES:
            raise HTTPException(400, f"language_preference must be one of {', '.join(LANGUAGES)}")
        u.language_preference = data["language_preference"]
    for f in ("clinic_address", "clinic_phone", "currency"):
        if f in data:
            setattr(u, f, data[f])
    cs.updated_at = u.updated_at = utcnow()
    session.add(cs); session.add(u); session.commit()
    session.refresh(cs); session.refresh(u)
    return _settings_out(u, cs)

@app.post("/api/clinic-settings/services", status_code=201)
def add_service(data: dict = Body(...), u: User = Depends(current_user), session: Session = Depends(get_session)):
    cs = _clinic_setting(u, session)
    try:
        price = float(data["price"])
        duration = int(data["duration"])
        name_en = str(data["name_en"]).strip()
    except (KeyError, TypeError, ValueError):
        raise HTTPException(400, "name_en, price and duration are required")
    if not name_en or price < 0 or duration <= 0:
        raise HTTPException(400, "name_en must be set, price >= 0 and duration > 0")
    s = Service(
        clinic_setting_id=cs.id, name_en=name_en, name_ar=data.get("name_ar"),
        description_en=data.get("description_en"), description_ar=data.get("description_ar"),
        price=price, currency=data.get("currency"), duration=duration,
    )
    session.add(s); session.commit(); session.refresh(s)
    return _service_out(s)

@app.delete("/api/clinic-settings/services/{service_id}")
def delete_service(service_id: int, u: User = Depends(current_user), session: Session = Depends(get_session)):
    cs = _clinic_setting(u, session)
    s = session.get(Service, service_id)
    if not s or s.clinic_setting_id != cs.id:
        raise HTTPException(404, "Service not found")
    session.delete(s); session.commit()
    return {"message": "Service deleted"}

@app.post("/api/clinic-settings/keywords", status_code=201)
def add_keyword(data: dict = Body(...), u: User = Depends(current_user), session: Session = Depends(get_session)):
    cs = _clinic_setting(u, session)
    keyword = (data.get("keyword") or "").strip()
    response_en = (data.get("response_en") or "").strip()
    if not keyword or not response_en:
        raise HTTPException(400, "keyword and response_en are required")
    k = CustomKeyword(clinic_setting_id=cs.id, keyword=keyword, response_en=response_en,
                      response_ar=data.get("response_ar"))
    session.add(k); session.commit(); session.refresh(k)
    return _keyword_out(k)

@app.delete("/api/clinic-settings/keywords/{keyword_id}")
def delete_keyword(keyword_id: int, u: User = Depends(current_user), session: Session = Depends(get_session)):
    cs = _clinic_setting(u, session)
    k = session.get(CustomKeyword, keyword_id)
    if not k or k.clinic_setting_id != cs.id:
        raise HTTPException(404, "Keyword not found")
    session.delete(k); session.commit()
    return {"message": "Keyword deleted"}

# ----------------- WhatsApp sessions -----------------
def _wa_session_out(s: WhatsappSession, status: Optional[str] = None) -> dict:
    return {
        "id": s.id,
        "session_id": s.session_id,
        "phone_number": s.phone_number,
        "status": status or s.status,
        "created_at": s.created_at.isoformat(),
        "updated_at": s.updated_at.isoformat(),
    }

def _own_session(session_pk: int, u: User, session: Session) -> WhatsappSession:
    s = session.get(WhatsappSession, session_pk)
    if not s or s.user_id != u.id:
        raise HTTPException(404, "WhatsApp session not found")
    return s

@app.post("/api/whatsapp-sessions", status_code=201)
def create_wa_session(data: dict = Body(...), u: User = Depends(current_user), session: Session = Depends(get_session)):
    name, phone = data.get("name"), data.get("phone_number")
    if not name or not phone:
        raise HTTPException(400, "Session name and phone number are required")
    if not settings.wasender_access_token:
        raise HTTPException(500, "WASENDER_ACCESS_TOKEN is not configured")

    payload = {
        "name": name,
        "phone_number": phone,
        "account_protection": data.get("account_protection", True),
        "log_messages": data.get("log_messages", True),
    }
    for opt in ("webhook_url", "webhook_enabled", "webhook_events", "read_incoming_messages", "auto_reject_calls"):
        if data.get(opt) is not None:
            payload[opt] = data[opt]
    if "webhook_url" not in payload:
        payload["webhook_url"] = f"{settings.app_base_url.rstrip('/')}/api/webhook"

    try:
        created = wasender.create_session(settings.wasender_access_token, payload)
    except wasender.WasenderError as e:
        logger.error("session provisioning failed: %s %s", e, e.payload)
        raise HTTPException(502, "Failed to create WhatsApp session with the provider")
    if not created.get("id") or not created.get("api_key") or not created.get("webhook_secret"):
        logger.error("provider returned an incomplete session: %s", created)
        raise HTTPException(502, "Failed to create WhatsApp session with the provider")

    s = WhatsappSession(
        user_id=u.id,
        session_id=str(created["id"]),
        api_key=created["api_key"],
        webhook_secret=created["webhook_secret"],
        phone_number=phone,
        status=coerce_session_status(created.get("status")),
    )
    session.add(s); session.commit(); session.refresh(s)
    logger.info("provisioned session %s (provider id %s) for user %s", s.id, s.session_id, u.id)
    return {"message": "WhatsApp session created successfully", "session": _wa_session_out(s)}

@app.get("/api/whatsapp-sessions")
def list_wa_sessions(u: User = Depends(current_user), session: Session = Depends(get_session)):
    rows = session.exec(select(WhatsappSession).where(WhatsappSession.user_id == u.id).order_by(WhatsappSession.id)).all()
    return [_wa_session_out(s) for s in rows]

@app.get("/api/whatsapp-sessions/{session_pk}")
def get_wa_session(session_pk: int, u: User = Depends(current_user), session: Session = Depends(get_session)):
    s = _own_session(session_pk, u, session)
    try:
        live = wasender.get_session_status(s.api_key, s.session_id)
    except wasender.WasenderError as e:
        logger.warning("live status for session %s unavailable: %s", s.id, e)
        return _wa_session_out(s)

    status = coerce_session_status(live.get("status"), SessionStatus(s.status))
    if status != s.status:
        s.status, s.updated_at = status, utcnow()
        session.add(s); session.commit(); session.refresh(s)
    return _wa_session_out(s)

@app.delete("/api/whatsapp-sessions/{session_pk}")
def delete_wa_session(session_pk: int, u: User = Depends(current_user), session: Session = Depends(get_session)):
    s = _own_session(session_pk, u, session)
    try:
        wasender.disconnect_session(s.api_key, s.session_id)
    except wasender.WasenderError as e:
        # the local record goes regardless; the provider side can be cleaned up from its dashboard
        logger.warning("disconnect of session %s failed before delete: %s", s.id, e)
    session.delete(s); session.commit()
    logger.info("deleted session %s and its messages", session_pk)
    return {"message": "WhatsApp session deleted successfully"}

@app.post("/api/whatsapp-sessions/{session_pk}/connect")
def connect_wa_session(session_pk: int, u: User = Depends(current_user), session: Session = Depends(get_session)):
    s = _own_session(session_pk, u, session)
    try:
        resp = wasender.connect_session(s.api_key, s.session_id)
    except wasender.WasenderError as e:
        logger.error("connect failed for session %s: %s", s.id, e)
        raise HTTPException(502, "Failed to connect WhatsApp session with the provider")
    s.status = coerce_session_status(resp.get("status"), SessionStatus.connecting)
    s.updated_at = utcnow()
    session.add(s); session.commit(); session.refresh(s)
    return {"message": "WhatsApp session connection initiated", "session": _wa_session_out(s)}

@app.get("/api/whatsapp-sessions/{session_pk}/qrcode")
def wa_session_qrcode(session_pk: int, u: User = Depends(current_user), session: Session = Depends(get_session)):
    s = _own_session(session_pk, u, session)
    try:
        resp = wasender.get_qr_code(s.api_key, s.session_id)
    except wasender.WasenderError as e:
        logger.error("qr code fetch failed for session %s: %s", s.id, e)
        raise HTTPException(502, "Failed to get QR code from the provider")
    if not resp.get("qrCode"):
        raise HTTPException(502, "Failed to get QR code from the provider")
    return {"message": "QR code retrieved successfully", "qrCode": resp["qrCode"]}

@app.get("/api/whatsapp-sessions/{session_pk}/messages")
def list_wa_messages(
    session_pk: int,
    limit: int = 50,
    u: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    s = _own_session(session_pk, u, session)
    rows = session.exec(
        select(Message)
        .where(Message.whatsapp_session_id == s.id)
        .order_by(Message.id.desc())
        .limit(max(1, min(limit, 200)))
    ).all()
    return [{
        "id": m.id,
        "direction": m.direction,
        "sender_number": m.sender_number,
        "recipient_number": m.recipient_number,
        "content": m.content,
        "status": m.status,
        "language_used": m.language_used,
        "timestamp": m.timestamp.isoformat(),
    } for m in rows]

# ----------------- Provider webhook -----------------
async def _receive(req: Request, session: Session, provider_session_id: Optional[str] = None):
    raw = await req.body()
    signature = req.headers.get(SIGNATURE_HEADER)
    try:
        envelope = parse_envelope(raw)
    except InvalidEnvelope as e:
        logger.error("rejecting webhook: %s", e)
        return JSONResponse({"error": str(e)}, status_code=400)
    if not signature:
        logger.error("rejecting %s webhook: missing %s header", envelope.event, SIGNATURE_HEADER)
        return JSONResponse({"error": "Missing webhook signature"}, status_code=400)

    try:
        await run_in_threadpool(
            ingest, session, raw, envelope, signature, settings.default_currency, provider_session_id,
        )
    except SignatureRejected:
        return JSONResponse({"error": "Invalid webhook signature"}, status_code=403)
    return {"received": True}

@app.post("/api/webhook")
async def provider_webhook(req: Request, session: Session = Depends(get_session)):
    return await _receive(req, session)

@app.post("/api/webhook/{provider_session_id}")
async def provider_session_webhook(provider_session_id: str, req: Request, session: Session = Depends(get_session)):
    return await _receive(req, session, provider_session_id)
