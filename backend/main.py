import logging
import os
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_DIR,
    LOG_LEVEL,
)
from backend.routers import attendance, core, events, scanning
from backend.services.scanning import shutdown_scan_session
from database.db import create_tables

APP_LOGGERS = ("backend", "database", "scanner")


def setup_logging() -> None:
    """Console logging, plus a rotating file when CODEXSCAN_LOG_DIR is set."""
    log_format = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(threadName)s : %(message)s"
    )
    level = getattr(logging, LOG_LEVEL, logging.INFO)

    handlers: list[logging.Handler] = []
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_format)
    handlers.append(console_handler)

    if LOG_DIR:
        os.makedirs(LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, "codexscan.log"),
            maxBytes=1024 * 1024 * 10,  # 10MB
            backupCount=5,
        )
        file_handler.setFormatter(log_format)
        file_handler.setLevel(logging.INFO)
        handlers.append(file_handler)

    for name in APP_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        if logger.handlers:
            continue
        for handler in handlers:
            logger.addHandler(handler)


setup_logging()

app = FastAPI(title="CodexScan Attendance API")

# -----------------------------
# CORS (portal dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(events.router)
app.include_router(attendance.router)
app.include_router(scanning.router)


# -----------------------------
# Startup / shutdown
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    logging.getLogger("backend").info("Database ready")


@app.on_event("shutdown")
async def _shutdown():
    # Release the camera even if a scan is still running.
    await shutdown_scan_session()
