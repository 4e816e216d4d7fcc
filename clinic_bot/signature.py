"""Plain secret or ``sha256=`` body HMAC in X-Webhook-Signature, compared in constant time."""
import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Webhook-Signature"
HMAC_PREFIX = "sha256="


def body_digest(raw_body: bytes, secret: str) -> str:
    return HMAC_PREFIX + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify(raw_body: bytes, signature_header: Optional[str], tenant_secret: Optional[str]) -> bool:
    if not signature_header or not tenant_secret:
        return False
    presented = signature_header.encode("utf-8")
    if hmac.compare_digest(presented, tenant_secret.encode("utf-8")):
        return True
    if presented.startswith(HMAC_PREFIX.encode("utf-8")):
        expected = body_digest(raw_body or b"", tenant_secret).encode("utf-8")
        return hmac.compare_digest(presented.lower(), expected)
    return False
