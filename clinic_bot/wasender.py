"""WasenderAPI transport; every call takes the API key to use."""
import logging

import requests

from .settings import load_settings

logger = logging.getLogger(__name__)

_settings = load_settings()


class WasenderError(Exception):
    def __init__(self, message: str, status_code: int | None = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def _request(method: str, path: str, api_key: str, **kwargs) -> dict:
    url = f"{_settings.wasender_base_url}{path}"
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    try:
        resp = requests.request(method, url, headers=headers, timeout=_settings.wasender_timeout, **kwargs)
    except requests.RequestException as e:
        raise WasenderError(f"{method} {path} failed: {e}") from e

    try:
        body = resp.json()
    except ValueError:
        body = {"raw": resp.text}

    if not resp.ok:
        raise WasenderError(f"{method} {path} returned {resp.status_code}", resp.status_code, body)
    if isinstance(body, dict) and body.get("success") is False:
        raise WasenderError(f"{method} {path} was rejected", resp.status_code, body)
    return body


def _data(body: dict) -> dict:
    data = body.get("data") if isinstance(body, dict) else None
    return data if isinstance(data, dict) else {}


def send_message(api_key: str, to: str, text: str) -> dict:
    """Send a text message; returns the provider's ``data`` block (``msgId`` etc)."""
    body = _request("POST", "/send-message", api_key, json={"to": to, "text": text})
    data = _data(body)
    logger.info("wasender accepted message to %s (msgId=%s)", to, data.get("msgId"))
    return data


def get_session_status(api_key: str, session_id: str) -> dict:
    body = _request("GET", "/status", api_key, params={"whatsappSession": session_id})
    if isinstance(body, dict) and "status" in body:
        return body
    return _data(body)


def create_session(account_token: str, payload: dict) -> dict:
    return _data(_request("POST", "/whatsapp-sessions", account_token, json=payload))


def connect_session(api_key: str, session_id: str) -> dict:
    return _data(_request("POST", f"/whatsapp-sessions/{session_id}/connect", api_key))


def get_qr_code(api_key: str, session_id: str) -> dict:
    return _data(_request("GET", f"/whatsapp-sessions/{session_id}/qrcode", api_key))


def disconnect_session(api_key: str, session_id: str) -> dict:
    return _data(_request("POST", f"/whatsapp-sessions/{session_id}/disconnect", api_key))
