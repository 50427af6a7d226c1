import base64
import hashlib
import hmac
import json
import time
from typing import Callable, TypedDict

from fastapi import Depends, Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
KNOWN_ROLES = {ROLE_STUDENT, ROLE_ADMIN}


class SessionClaims(TypedDict):
    sub: str
    role: str
    iat: int
    exp: int


def _segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unsegment(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(body: str) -> str:
    mac = hmac.new(SIGNING_KEY.encode("utf-8"), body.encode("ascii"), hashlib.sha256)
    return _segment(mac.digest())


def issue_session_token(
    subject: str,
    *,
    role: str = ROLE_STUDENT,
    ttl_seconds: int = AUTH_TOKEN_TTL_SECONDS,
) -> tuple[str, SessionClaims]:
    """Sign `{sub, role, iat, exp}` into `<body>.<signature>`."""
    issued = int(time.time())
    claims: SessionClaims = {
        "sub": subject.strip(),
        "role": role,
        "iat": issued,
        "exp": issued + int(ttl_seconds),
    }
    body = _segment(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_signature(body)}", claims


def decode_session_token(token: str, *, now: int | None = None) -> SessionClaims | None:
    body, dot, signature = (token or "").partition(".")
    if not dot or not hmac.compare_digest(signature, _signature(body)):
        return None

    try:
        claims = json.loads(_unsegment(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(claims, dict):
        return None

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        return None
    if claims.get("role") not in KNOWN_ROLES:
        return None
    expires = claims.get("exp")
    if not isinstance(expires, int) or expires < (now if now is not None else int(time.time())):
        return None
    return claims  # type: ignore[return-value]


def require_session(authorization: str | None = Header(default=None)) -> SessionClaims:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    claims = decode_session_token(token.strip())
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return claims


def require_role(role: str) -> Callable[..., SessionClaims]:
    def dependency(session: SessionClaims = Depends(require_session)) -> SessionClaims:
        if session["role"] != role:
            raise HTTPException(status_code=403, detail=f"{role.capitalize()} session required.")
        return session

    return dependency


require_student = require_role(ROLE_STUDENT)
require_admin = require_role(ROLE_ADMIN)
