"""
Navdrishti commerce core – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from navdrishti.config import get_settings
from navdrishti.errors import CommerceError, PersistenceError, RateLimitExceeded
from navdrishti.routers import admin, orders, shipping, webhooks
from navdrishti.services import expiry, notifications

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="Navdrishti Commerce Core",
    version="1.0.0",
    description="Order lifecycle, payment reconciliation, inventory and shipment tracking.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception handlers ────────────────────────────────────────────────────────

@app.exception_handler(CommerceError)
async def _commerce_error(request: Request, exc: CommerceError):
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or None
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "detail": first.get("msg", "Invalid request"),
            "field": field,
        },
    )


@app.exception_handler(SQLAlchemyError)
async def _persistence_error(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    err = PersistenceError()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(orders.router)
app.include_router(webhooks.router)
app.include_router(shipping.router)
app.include_router(admin.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

_tasks: List[asyncio.Task] = []


@app.on_event("startup")
async def _startup() -> None:
    logger.info("Starting notification worker and expiry sweeper …")
    _tasks.append(asyncio.create_task(notifications.worker(), name="notification-worker"))
    _tasks.append(asyncio.create_task(expiry.sweeper(), name="expiry-sweeper"))
    logger.info("Commerce core ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    logger.info("Draining notification queue …")
    try:
        await asyncio.wait_for(notifications._queue.join(), timeout=30)
    except asyncio.TimeoutError:
        logger.warning("Notification queue did not drain within 30 s")
    for task in _tasks:
        task.cancel()
