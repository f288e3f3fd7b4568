import hashlib
import hmac
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Literal, TypedDict, cast

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_BUSY_TIMEOUT_SECONDS,
    DB_PATH,
    QR_TOKEN_BYTES,
    QR_TOKEN_MAX_TTL_SECONDS,
    QR_TOKEN_TTL_SECONDS,
)

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

EventKind = Literal["arrival", "departure"]
EVENT_KINDS: tuple[EventKind, ...] = ("arrival", "departure")
BindingOutcome = Literal["bound", "matched", "conflict"]


class IssuedToken(TypedDict):
    code: str
    expires_at: str
    ttl_seconds: int


class DeviceBinding(TypedDict):
    identity_id: str
    device_id: str
    bound_at: str


class LedgerEvent(TypedDict):
    id: int
    identity_id: str
    kind: EventKind
    seq: int
    recorded_at: str


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    # Fixed-width UTC text so expiry comparisons can run in SQL.
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def connect_db():
    conn = sqlite3.connect(
        str(DB_PATH),
        timeout=DB_BUSY_TIMEOUT_SECONDS,
        check_same_thread=False,
    )
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def _write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """
    Run the block under SQLite's write lock.

    BEGIN IMMEDIATE takes the lock before the first read, so a
    read-then-write inside the block cannot interleave with another writer.
    Contention waits on the connection's busy timeout.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn.cursor()
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    # Readers keep working while a scan holds the write lock.
    cursor.execute("PRAGMA journal_mode = WAL;")

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS qr_tokens (
        code TEXT PRIMARY KEY,
        expires_at TEXT NOT NULL,        -- ISO-8601 UTC, microseconds
        created_at TEXT NOT NULL
    )
    """
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_qr_tokens_expires_at ON qr_tokens (expires_at);")

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS device_bindings (
        identity_id TEXT PRIMARY KEY,
        device_id TEXT NOT NULL,
        bound_at TEXT NOT NULL
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS attendance_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identity_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('arrival', 'departure')),
        seq INTEGER NOT NULL,            -- 1-based position per identity
        recorded_at TEXT NOT NULL,
        UNIQUE (identity_id, seq)
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS profiles (
        identity_id TEXT PRIMARY KEY,
        full_name TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Admin users
# -----------------------------
def create_admin_user(username: str, password: str) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (clean_username, _hash_password(clean_password)),
    )
    admin_id = cur.lastrowid
    conn.commit()
    conn.close()
    return admin_id


def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    admin_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": admin_id, "username": saved_username}


# -----------------------------
# Token Store
# -----------------------------
def issue_token(
    ttl_seconds: int = QR_TOKEN_TTL_SECONDS,
    *,
    now: datetime | None = None,
) -> IssuedToken:
    """
    Mint a single-use scan code valid for `ttl_seconds` from `now`.

    Codes come from `secrets`, never from a counter, so they cannot be
    guessed or enumerated.
    """
    ttl = int(ttl_seconds)
    if ttl < 1 or ttl > QR_TOKEN_MAX_TTL_SECONDS:
        raise ValueError(f"ttl_seconds must be between 1 and {QR_TOKEN_MAX_TTL_SECONDS}.")

    moment = now or _utcnow()
    code = secrets.token_urlsafe(QR_TOKEN_BYTES)
    expires_at = _iso(moment + timedelta(seconds=ttl))

    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            cur.execute(
                """
                INSERT INTO qr_tokens (code, expires_at, created_at)
                VALUES (?, ?, ?)
                """,
                (code, expires_at, _iso(moment)),
            )
    finally:
        conn.close()

    return {"code": code, "expires_at": expires_at, "ttl_seconds": ttl}


def consume_token(code: str, now: datetime | None = None) -> bool:
    """
    Delete `code` if it exists and has not expired; True when it was deleted.

    The existence check, the expiry check and the delete are one statement,
    so among any number of concurrent callers at most one sees True.
    """
    if not code:
        return False

    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            cur.execute(
                """
                DELETE FROM qr_tokens
                WHERE code = ?
                  AND expires_at > ?
                """,
                (code, _iso(now or _utcnow())),
            )
            consumed = cur.rowcount == 1
    finally:
        conn.close()
    return consumed


def purge_expired_tokens(now: datetime | None = None) -> int:
    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            cur.execute(
                "DELETE FROM qr_tokens WHERE expires_at <= ?",
                (_iso(now or _utcnow()),),
            )
            purged = max(0, cur.rowcount)
    finally:
        conn.close()
    if purged:
        logger.info("Purged %d expired scan code(s)", purged)
    return purged


# -----------------------------
# Device Binding Registry
# -----------------------------
def get_device_binding(
    identity_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> DeviceBinding | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT identity_id, device_id, bound_at
            FROM device_bindings
            WHERE identity_id = ?
            """,
            (identity_id,),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    if not row:
        return None
    return {"identity_id": row[0], "device_id": row[1], "bound_at": row[2]}


def check_or_bind_device(
    identity_id: str,
    device_id: str,
    *,
    now: datetime | None = None,
) -> BindingOutcome:
    """
    Pin `identity_id` to `device_id` on first use, otherwise compare.

    Returns "bound" when this call created the binding, "matched" when an
    existing binding names the same device and "conflict" when it names a
    different one. An existing binding is never overwritten: the insert
    yields to the identity_id primary key and the stored device is compared.
    """
    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            cur.execute(
                """
                INSERT INTO device_bindings (identity_id, device_id, bound_at)
                VALUES (?, ?, ?)
                ON CONFLICT(identity_id) DO NOTHING
                """,
                (identity_id, device_id, _iso(now or _utcnow())),
            )
            if cur.rowcount == 1:
                outcome: BindingOutcome = "bound"
            else:
                cur.execute(
                    "SELECT device_id FROM device_bindings WHERE identity_id = ?",
                    (identity_id,),
                )
                outcome = "matched" if cur.fetchone()[0] == device_id else "conflict"
    finally:
        conn.close()

    if outcome == "bound":
        logger.info("Bound identity %s to device %s", identity_id, device_id)
    return outcome


def reset_device_binding(identity_id: str) -> bool:
    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            cur.execute("DELETE FROM device_bindings WHERE identity_id = ?", (identity_id,))
            removed = cur.rowcount == 1
    finally:
        conn.close()
    if removed:
        logger.warning("Device binding reset for identity %s", identity_id)
    return removed


# -----------------------------
# Attendance Ledger
# -----------------------------
def next_event_kind(last: str | None) -> EventKind:
    return "departure" if last == "arrival" else "arrival"


def _last_event_row(cur: sqlite3.Cursor, identity_id: str) -> tuple[str, int, str] | None:
    cur.execute(
        """
        SELECT kind, seq, recorded_at
        FROM attendance_events
        WHERE identity_id = ?
        ORDER BY seq DESC
        LIMIT 1
        """,
        (identity_id,),
    )
    row = cur.fetchone()
    if not row:
        return None
    return str(row[0]), int(row[1]), str(row[2])


def _stamp_after(last: tuple[str, int, str] | None, now: datetime | None) -> str:
    # Taken while the write lock is held; never earlier than the previous event.
    stamp = _iso(now or _utcnow())
    if last and last[2] > stamp:
        return last[2]
    return stamp


def _insert_event(
    cur: sqlite3.Cursor,
    *,
    identity_id: str,
    kind: EventKind,
    seq: int,
    recorded_at: str,
) -> int:
    cur.execute(
        """
        INSERT INTO attendance_events (identity_id, kind, seq, recorded_at)
        VALUES (?, ?, ?, ?)
        """,
        (identity_id, kind, seq, recorded_at),
    )
    return int(cur.lastrowid)


def last_event_kind(
    identity_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> EventKind | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = _last_event_row(active_conn.cursor(), identity_id)
    finally:
        if owns_conn:
            active_conn.close()
    return cast(EventKind, row[0]) if row else None


def append_event(identity_id: str, kind: str, now: datetime | None = None) -> int:
    """Append `kind` at the identity's next position and return the event id."""
    if kind not in EVENT_KINDS:
        raise ValueError(f"Unknown event kind: {kind!r}")

    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            last = _last_event_row(cur, identity_id)
            event_id = _insert_event(
                cur,
                identity_id=identity_id,
                kind=cast(EventKind, kind),
                seq=last[1] + 1 if last else 1,
                recorded_at=_stamp_after(last, now),
            )
    finally:
        conn.close()
    return event_id


def toggle_append_event(identity_id: str, now: datetime | None = None) -> LedgerEvent:
    """
    Record the identity's next event: departure after an arrival, else arrival.

    Reading the last event and appending the next one happen under a single
    write transaction. Concurrent toggles for one identity therefore commit
    in a strict order and each sees its predecessor; UNIQUE(identity_id, seq)
    rejects any append that was computed from a stale position. The
    timestamp is taken under the same lock, so ordering by recorded_at
    agrees with ordering by seq.
    """
    conn = connect_db()
    try:
        with _write_transaction(conn) as cur:
            last = _last_event_row(cur, identity_id)
            kind = next_event_kind(last[0] if last else None)
            seq = last[1] + 1 if last else 1
            recorded_at = _stamp_after(last, now)
            event_id = _insert_event(
                cur,
                identity_id=identity_id,
                kind=kind,
                seq=seq,
                recorded_at=recorded_at,
            )
    finally:
        conn.close()

    return {
        "id": event_id,
        "identity_id": identity_id,
        "kind": kind,
        "seq": seq,
        "recorded_at": recorded_at,
    }


def get_events(
    *,
    identity_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Ledger rows in reverse commit order, with the profile name when one exists."""
    where_sql, params = _build_events_where_clause(identity_id=identity_id)
    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            ae.id,
            ae.identity_id,
            p.full_name,
            ae.kind,
            ae.seq,
            ae.recorded_at
        FROM attendance_events ae
        LEFT JOIN profiles p ON p.identity_id = ae.identity_id
        WHERE {where_sql}
        ORDER BY ae.id DESC
        LIMIT ?
        OFFSET ?
        """,
        [*params, safe_limit, safe_offset],
    )
    rows = cur.fetchall()
    conn.close()

    return [
        {
            "id": row[0],
            "identity_id": row[1],
            "full_name": row[2],
            "kind": row[3],
            "seq": row[4],
            "recorded_at": row[5],
        }
        for row in rows
    ]


def get_events_total(*, identity_id: str | None = None) -> int:
    where_sql, params = _build_events_where_clause(identity_id=identity_id)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT COUNT(1)
        FROM attendance_events ae
        WHERE {where_sql}
        """,
        params,
    )
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0


def _build_events_where_clause(*, identity_id: str | None = None) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if identity_id is not None:
        where.append("ae.identity_id = ?")
        params.append(identity_id)

    return " AND ".join(where), params


# -----------------------------
# Profiles (written by the profile subsystem)
# -----------------------------
def get_profile_name(identity_id: str) -> str | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT full_name
        FROM profiles
        WHERE identity_id = ?
        """,
        (identity_id,),
    )
    row = cur.fetchone()
    conn.close()
    if not row or not row[0]:
        return None
    return str(row[0]).strip() or None


def upsert_profile(identity_id: str, full_name: str) -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO profiles (identity_id, full_name)
        VALUES (?, ?)
        ON CONFLICT (identity_id) DO UPDATE
        SET full_name = excluded.full_name,
            updated_at = CURRENT_TIMESTAMP
        """,
        (identity_id, full_name),
    )
    conn.commit()
    conn.close()
