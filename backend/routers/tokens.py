from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.config import QR_TOKEN_MAX_TTL_SECONDS, QR_TOKEN_TTL_SECONDS
from backend.security import require_admin
from database.db import issue_token, purge_expired_tokens

router = APIRouter(dependencies=[Depends(require_admin)])


class TokenRequest(BaseModel):
    ttl_seconds: int | None = None


@router.post("/tokens")
def create_token(payload: TokenRequest | None = None):
    ttl = QR_TOKEN_TTL_SECONDS
    if payload is not None and payload.ttl_seconds is not None:
        ttl = payload.ttl_seconds
    if ttl < 1 or ttl > QR_TOKEN_MAX_TTL_SECONDS:
        raise HTTPException(
            status_code=400,
            detail=f"ttl_seconds must be between 1 and {QR_TOKEN_MAX_TTL_SECONDS}.",
        )

    # Display screens rotate every few seconds; sweep what the last ones left.
    purge_expired_tokens()
    issued = issue_token(ttl)
    return {
        "token": issued["code"],
        "expires_at": issued["expires_at"],
        "expires_in": issued["ttl_seconds"],
    }
