import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from backend.errors import InvalidRequest, ScanRejected, Unauthenticated
from backend.security import Identity, optional_identity, resolve_identity
from backend.services.validator import validate_scan

logger = logging.getLogger(__name__)

router = APIRouter()

SCAN_PATH = "/scan/validate"


class ScanRequest(BaseModel):
    code: str | None = None
    device_id: str | None = None


def malformed_scan_rejection(request: Request) -> ScanRejected:
    """Classify a scan whose body failed to parse, keeping the identity check first."""
    if resolve_identity(request.headers.get("authorization")) is None:
        return Unauthenticated()
    logger.warning("Rejected scan with malformed body")
    return InvalidRequest()


@router.post(SCAN_PATH)
def validate(payload: ScanRequest, identity: Identity | None = Depends(optional_identity)):
    # Rejections are raised as ScanRejected and rendered by the app handler.
    return validate_scan(code=payload.code, device_id=payload.device_id, identity=identity)
