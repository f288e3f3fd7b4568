import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session
from database.db import create_tables, verify_admin_credentials

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth")


class AdminLogin(BaseModel):
    username: str
    password: str


def _check_admin(username: str, password: str) -> dict | None:
    try:
        return verify_admin_credentials(username, password)
    except sqlite3.OperationalError:
        # Schema may be missing when the app runs without its lifespan.
        logger.warning("Admin lookup failed; recreating schema and retrying")
        try:
            create_tables()
            return verify_admin_credentials(username, password)
        except sqlite3.OperationalError:
            logger.exception("Admin lookup failed after schema repair")
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )


def _session_body(token: str, claims: dict) -> dict:
    expires_at = int(claims["exp"])
    return {
        "access_token": token,
        "token_type": "bearer",
        "identity_id": claims["sub"],
        "role": claims["role"],
        "expires_at": expires_at,
        "expires_in": max(0, expires_at - int(time.time())),
    }


@router.post("/login")
def admin_login(payload: AdminLogin):
    """Exchange admin credentials for a bearer session used by the issuer and admin views."""
    username = payload.username.strip()
    password = payload.password.strip()
    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required.")

    admin = _check_admin(username, password)
    if admin is None:
        logger.info("Rejected admin login for %r", username)
        raise HTTPException(status_code=401, detail="Invalid admin credentials.")

    token, claims = issue_session_token(admin["username"], role="admin", name=admin["username"])
    return _session_body(token, claims)


@router.get("/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "identity_id": session.get("sub"),
        "role": session.get("role", "worker"),
        "name": session.get("name"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
