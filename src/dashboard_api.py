"""
Campus Pulse Intake API

FastAPI backend for submitting campus issue reports, streaming pipeline
progress, and administering issue groups.
"""

import logging
import os
import sys
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from .db import init_db
from .routers.health import router as health_router
from .routers.intake import router as intake_router

# --- Configuration & Logging ---

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# Configure JSON Logging
logger = logging.getLogger()
logHandler = logging.StreamHandler(sys.stdout)
formatter = jsonlogger.JsonFormatter(
    "%(asctime)s %(levelname)s %(name)s %(message)s",
    rename_fields={"asctime": "timestamp", "levelname": "severity"}
)
logHandler.setFormatter(formatter)
logger.addHandler(logHandler)
logger.setLevel(logging.INFO)

# --- Middleware ---

class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        log_data = {
            "event": "access_log",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "processing_time_ms": round(process_time, 2),
            "user_agent": request.headers.get("user-agent"),
            "client_ip": request.client.host if request.client else None,
        }

        logger.info("request_processed", extra=log_data)
        return response


app = FastAPI(
    title="Campus Pulse Intake API",
    description="Issue report triage, aggregation, prioritization and routing",
    version="1.0.0",
)

# Logging (outermost, measures total time)
app.add_middleware(LoggingMiddleware)

# CORS (innermost, handles preflight)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(intake_router)
app.include_router(health_router)


@app.on_event("startup")
def startup_event():
    # Schema and seed statements are idempotent
    if os.environ.get("INIT_DB_ON_STARTUP", "1") == "1":
        init_db()
        logger.info("Database schema initialized")


# --- Main entry point ---

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
