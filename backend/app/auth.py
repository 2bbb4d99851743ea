import secrets
import time
from typing import Optional

from jose import jwt, JWTError
from .config import settings


def create_access_token(data: dict, expires_in_sec: int = 3600) -> str:
    to_encode = data.copy()
    expire = time.time() + expires_in_sec
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET, algorithm="HS256")
    return encoded_jwt

def decode_access_token(token: str) -> Optional[dict]:
    if not settings.JWT_SECRET:
        return None
    try:
        decoded_token = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
        exp = decoded_token.get("exp")
        if exp is None or exp < time.time():
            return None
        return decoded_token
    except JWTError:
        return None


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer ") :].strip()
    return token or None


def internal_token_ok(authorization: Optional[str]) -> bool:
    expected = settings.PAYMENTS_INTERNAL_TOKEN
    provided = extract_bearer_token(authorization)
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided, expected)
