from fastapi import APIRouter, Depends, HTTPException, Query

from backend.security import require_admin
from database.db import (
    get_device_binding,
    get_events,
    get_events_total,
    purge_expired_tokens,
    reset_device_binding,
)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/admin/events")
def list_events(
    identity_id: str | None = None,
    limit: int = Query(default=20, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_identity = identity_id.strip() if identity_id else None
    rows = get_events(identity_id=clean_identity, limit=limit, offset=offset)
    total = get_events_total(identity_id=clean_identity)
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/admin/devices/{identity_id}")
def device_binding(identity_id: str):
    binding = get_device_binding(identity_id)
    if not binding:
        raise HTTPException(status_code=404, detail="No device bound to this identity.")
    return binding


@router.delete("/admin/devices/{identity_id}")
def reset_device(identity_id: str):
    ok = reset_device_binding(identity_id)
    if not ok:
        raise HTTPException(status_code=404, detail="No device bound to this identity.")
    return {"ok": True, "message": "Device binding cleared; the next scan binds a new device."}


@router.post("/admin/tokens/purge")
def purge_tokens():
    purged = purge_expired_tokens()
    return {"ok": True, "purged": purged}
