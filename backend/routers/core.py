from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
    QR_TOKEN_MAX_TTL_SECONDS,
    QR_TOKEN_TTL_SECONDS,
)
from backend.security import require_admin
from database.db import EVENT_KINDS

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_admin)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/scan")
def scan_config():
    return {
        "qr_token_ttl_seconds": QR_TOKEN_TTL_SECONDS,
        "qr_token_max_ttl_seconds": QR_TOKEN_MAX_TTL_SECONDS,
        "event_kinds": list(EVENT_KINDS),
    }
