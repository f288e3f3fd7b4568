import logging
import sqlite3
from datetime import datetime, timezone
from typing import TypedDict

from backend.errors import DeviceConflict, InternalError, InvalidRequest, InvalidToken, Unauthenticated
from backend.security import Identity
from database.db import (
    EventKind,
    check_or_bind_device,
    consume_token,
    get_profile_name,
    toggle_append_event,
)

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Worker"


class ScanAccepted(TypedDict):
    accepted: bool
    kind: EventKind
    recorded_at: str
    display_message: str
    identity_id: str
    event_id: int
    sequence: int


def _code_hint(code: str) -> str:
    return f"{code[:6]}..." if len(code) > 6 else "***"


def display_message(kind: EventKind, name: str) -> str:
    if kind == "arrival":
        return f"Welcome, {name}! Arrival recorded."
    return f"Goodbye, {name}! Departure recorded."


def _display_name(identity: Identity) -> str:
    try:
        profile_name = get_profile_name(identity["identity_id"])
    except sqlite3.Error:
        # The event is already committed; a missing name must not fail the scan.
        logger.warning("Profile lookup failed for identity %s", identity["identity_id"], exc_info=True)
        profile_name = None
    return profile_name or identity.get("name") or DEFAULT_DISPLAY_NAME


def validate_scan(
    *,
    code: str | None,
    device_id: str | None,
    identity: Identity | None,
    now: datetime | None = None,
) -> ScanAccepted:
    """
    Decide whether a presented code records an attendance event.

    Steps run in order and stop at the first rejection:
      1. caller identity must be established      -> Unauthenticated
      2. code and device_id must be present       -> InvalidRequest
      3. code is consumed (exists, not expired)   -> InvalidToken
      4. identity is bound to this device         -> DeviceConflict
      5. next arrival/departure is appended       -> InternalError on failure

    Once step 3 succeeds the code is gone for good. A failure in a later
    step does not restore it; the caller retries with a freshly issued code.
    """
    if identity is None:
        raise Unauthenticated()

    clean_code = (code or "").strip()
    clean_device = (device_id or "").strip()
    if not clean_code or not clean_device:
        raise InvalidRequest()

    identity_id = identity["identity_id"]
    moment = now or datetime.now(timezone.utc)

    try:
        consumed = consume_token(clean_code, moment)
    except sqlite3.Error:
        logger.exception("Token consume failed for identity %s", identity_id)
        raise InternalError()
    if not consumed:
        logger.warning("Rejected scan for %s: invalid or expired code %s", identity_id, _code_hint(clean_code))
        raise InvalidToken()

    try:
        binding = check_or_bind_device(identity_id, clean_device, now=moment)
    except sqlite3.Error:
        logger.exception("Device binding failed for identity %s", identity_id)
        raise InternalError("Failed to bind device. Please scan a fresh code and try again.")
    if binding == "conflict":
        logger.warning("Rejected scan for %s: device %s is not the bound device", identity_id, clean_device)
        raise DeviceConflict()

    try:
        # The ledger stamps the event itself once its write lock is held.
        event = toggle_append_event(identity_id, now)
    except sqlite3.Error:
        logger.exception("Ledger append failed for identity %s", identity_id)
        raise InternalError("Failed to log attendance. Please scan a fresh code and try again.")

    logger.info("Recorded %s #%d for identity %s", event["kind"], event["seq"], identity_id)
    return {
        "accepted": True,
        "kind": event["kind"],
        "recorded_at": event["recorded_at"],
        "display_message": display_message(event["kind"], _display_name(identity)),
        "identity_id": identity_id,
        "event_id": event["id"],
        "sequence": event["seq"],
    }
