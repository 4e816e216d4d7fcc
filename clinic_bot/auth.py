from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from passlib.hash import pbkdf2_sha256

ALGORITHM = "HS256"

class InvalidToken(Exception):
    pass

def hash_password(p: str) -> str:
    return pbkdf2_sha256.hash(p)

def verify_password(p: str, h: str) -> bool:
    try:
        return pbkdf2_sha256.verify(p, h)
    except ValueError:
        # not a pbkdf2 hash
        return False

def create_access_token(subject: str, secret: str, minutes: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)

def decode_access_token(token: str, secret: str) -> int:
    """Return the user id carried by ``token``; raise InvalidToken otherwise."""
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
        return int(payload["sub"])
    except (JWTError, KeyError, ValueError) as e:
        raise InvalidToken(str(e)) from e
