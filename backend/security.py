import base64
import hashlib
import hmac
import json
import time
from typing import Any, TypedDict

from fastapi import Depends, Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY


class Identity(TypedDict):
    identity_id: str
    role: str
    name: str | None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_session_token(
    subject: str,
    *,
    role: str = "worker",
    name: str | None = None,
    ttl_seconds: int | None = None,
) -> tuple[str, dict[str, Any]]:
    """
    Sign a bearer session for `subject`.

    Admin sessions are minted by /auth/login; worker sessions come from the
    external identity provider, which signs with the same key and claims.
    """
    now = int(time.time())
    exp = now + (AUTH_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
    payload: dict[str, Any] = {
        "sub": subject.strip(),
        "role": role,
        "iat": now,
        "exp": exp,
    }
    if name:
        payload["name"] = name
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(payload_b64)}"
    return token, payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64)
    if not hmac.compare_digest(signature, expected):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_identity(authorization: str | None) -> Identity | None:
    """Map a bearer credential to the caller's identity, or None."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    payload = decode_session_token(token)
    if not payload:
        return None
    name = payload.get("name")
    return {
        "identity_id": payload["sub"].strip(),
        "role": str(payload.get("role") or "worker"),
        "name": name.strip() if isinstance(name, str) and name.strip() else None,
    }


def optional_identity(authorization: str | None = Header(default=None)) -> Identity | None:
    return resolve_identity(authorization)


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


def require_admin(session: dict[str, Any] = Depends(require_session)) -> dict[str, Any]:
    if session.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session
