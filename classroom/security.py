'''security is responsible for 2 jobs on the backend side:
1. Password security, so when someone signs up or signs in:
- never store raw pwd, but a pwd hash
- later verify the sign-in pwd against the hash
-> hash_password() + verify_password()

2. JWT sessions, when sign-in succeeds:
- backend hands out a short-lived access token and a longer refresh token
- the auth client keeps both and trades the refresh token for a new pair
  once the access token expires
-> create_access_token() + create_refresh_token() + decode_token()

'''

from __future__ import annotations
from datetime import datetime, timedelta, timezone
import secrets
import jwt
from jwt.exceptions import InvalidTokenError
from pwdlib import PasswordHash

from classroom import config

pwd_hasher = PasswordHash.recommended()

ALGORITHM = "HS256"

def hash_password(password: str) -> str:
    return pwd_hasher.hash(password)

def verify_password(password: str, password_hash: str) -> bool:
    return pwd_hasher.verify(password, password_hash)

def _encode(subject: str, token_type: str, expires_in: timedelta, extra: dict | None = None) -> tuple[str, datetime]:
    now = datetime.now(timezone.utc)
    expires_at = now + expires_in

    payload = {
        "sub": subject,
        "typ": token_type,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": secrets.token_hex(8),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, config.JWT_SECRET, algorithm=ALGORITHM), expires_at

def create_access_token(subject: str, email: str) -> tuple[str, datetime]:
    """Returns the token and its (aware, UTC) expiry."""
    return _encode(subject, "access", timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES), {"email": email})

def create_refresh_token(subject: str) -> str:
    token, _ = _encode(subject, "refresh", timedelta(minutes=config.REFRESH_TOKEN_EXPIRE_MINUTES))
    return token

def decode_token(token: str, token_type: str = "access") -> dict:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[ALGORITHM])
    except InvalidTokenError as e:
        raise ValueError(str(e)) from e
    if payload.get("typ") != token_type:
        raise ValueError(f"expected a {token_type} token")
    return payload
