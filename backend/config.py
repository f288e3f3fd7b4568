import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SCANPASS_DB_PATH", BASE_DIR / "database" / "scanpass.db"))
DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("SCANPASS_DB_BUSY_TIMEOUT_SECONDS", "30"))
ADMIN_USERNAME = os.getenv("SCANPASS_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("SCANPASS_ADMIN_PASSWORD", "admin123").strip() or "admin123"
# Shared with the external identity provider that signs worker sessions.
SIGNING_KEY = os.getenv("SCANPASS_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("SCANPASS_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SCANPASS_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SCANPASS_CORS_ALLOW_METHODS"),
    ["GET", "POST", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SCANPASS_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Client-Info"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SCANPASS_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("SCANPASS_ENABLE_DEBUG_ENDPOINTS"), False)
LOG_LEVEL = os.getenv("SCANPASS_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Single-use scan codes
QR_TOKEN_TTL_SECONDS = max(1, int(os.getenv("SCANPASS_QR_TOKEN_TTL_SECONDS", "15")))
QR_TOKEN_MAX_TTL_SECONDS = max(
    QR_TOKEN_TTL_SECONDS,
    int(os.getenv("SCANPASS_QR_TOKEN_MAX_TTL_SECONDS", "300")),
)
QR_TOKEN_BYTES = max(16, int(os.getenv("SCANPASS_QR_TOKEN_BYTES", "24")))
