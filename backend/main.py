import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.errors import ScanRejected
from backend.routers import admin, auth, core, scan, tokens
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_tables()
    logger.info("Schema ready")
    yield


app = FastAPI(title="ScanPass API", lifespan=lifespan)


# -----------------------------
# CORS (scanner + display clients)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(ScanRejected)
async def scan_rejected_handler(_request: Request, exc: ScanRejected):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    if request.url.path != scan.SCAN_PATH:
        return await request_validation_exception_handler(request, exc)
    rejection = scan.malformed_scan_rejection(request)
    return JSONResponse(status_code=rejection.status_code, content=rejection.to_dict())


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(scan.router)
app.include_router(tokens.router)
app.include_router(admin.router)
