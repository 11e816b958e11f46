"""
Bearer tokens that scope API and event-socket calls to one asset owner.

Identity is established elsewhere; this service only signs the owner id
(plus an optional email for display) and checks it on the way back in.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings


TOKEN_TYPE = "vsp_session"
TOKEN_AUDIENCE = "video-pipeline"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    expires_at: datetime
    email: Optional[str] = None


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    ttl: Optional[timedelta] = None,
) -> str:
    """Sign a token for `user_id`, valid for `ttl` (JWT_EXPIRATION_HOURS by default)."""
    if not user_id:
        raise ValueError("Cannot issue a session token without an owner id.")
    issued_at = datetime.now(timezone.utc)
    lifetime = ttl if ttl is not None else timedelta(hours=max(settings.JWT_EXPIRATION_HOURS, 1))
    claims = {
        "sub": user_id,
        "aud": TOKEN_AUDIENCE,
        "typ": TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry, audience and type; raises ValueError otherwise."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=TOKEN_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("typ") != TOKEN_TYPE:
        raise ValueError("Not a video pipeline session token.")
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise ValueError("Session token does not name an owner.")

    return SessionClaims(
        user_id=user_id,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        email=payload.get("email") or None,
    )
