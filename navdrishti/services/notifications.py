"""
Notification sink: fire-and-forget user notifications.

Architecture:
  - Services call ``notify(session, ...)`` while handling a request.  The
    message is parked on the session and only enqueued once that session's
    transaction commits; a rollback discards it.
  - A background worker coroutine drains the queue and persists each message
    with retries.  Failures are logged, never propagated to the caller.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from navdrishti.config import get_settings
from navdrishti.database import get_db_ctx
from navdrishti.models import Notification

logger = logging.getLogger(__name__)
settings = get_settings()

_PENDING_KEY = "pending_notifications"


# ── Job definition ───────────────────────────────────────────────────────────

@dataclass
class NotificationJob:
    user_id: int
    title: str
    message: str
    kind: str = "info"
    category: str = "order"
    action_url: Optional[str] = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ── Singleton queue ──────────────────────────────────────────────────────────

_queue: asyncio.Queue[NotificationJob] = asyncio.Queue(maxsize=10_000)


def enqueue(job: NotificationJob) -> None:
    """Non-blocking enqueue. Drops job and logs if queue is full."""
    try:
        _queue.put_nowait(job)
    except asyncio.QueueFull:
        logger.error("Notification queue full – dropping job for user=%s", job.user_id)


def notify(
    session: AsyncSession,
    user_id: int,
    title: str,
    message: str,
    kind: str = "info",
    category: str = "order",
    action_url: Optional[str] = None,
) -> None:
    """Queue a notification to be sent once *session* commits."""
    job = NotificationJob(
        user_id=user_id,
        title=title,
        message=message,
        kind=kind,
        category=category,
        action_url=action_url,
    )
    session.info.setdefault(_PENDING_KEY, []).append(job)


@event.listens_for(Session, "after_commit")
def _release_pending(sync_session: Session) -> None:
    jobs: List[NotificationJob] = sync_session.info.pop(_PENDING_KEY, [])
    for job in jobs:
        enqueue(job)


@event.listens_for(Session, "after_rollback")
def _discard_pending(sync_session: Session) -> None:
    dropped = sync_session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.debug("Discarded %d notification(s) after rollback", len(dropped))


# ── Worker ───────────────────────────────────────────────────────────────────

async def _deliver(job: NotificationJob) -> None:
    async with get_db_ctx() as session:
        session.add(
            Notification(
                user_id=job.user_id,
                title=job.title,
                message=job.message,
                kind=job.kind,
                category=job.category,
                action_url=job.action_url,
            )
        )


async def _handle_job(job: NotificationJob) -> None:
    max_retries = settings.notification_max_retries
    base_delay = settings.notification_retry_base_seconds

    for attempt in range(1, max_retries + 1):
        try:
            await _deliver(job)
            logger.debug("Notified user=%s (%s) attempt %d", job.user_id, job.title, attempt)
            return
        except Exception as exc:
            logger.warning(
                "Notification error user=%s attempt=%d/%d: %s",
                job.user_id, attempt, max_retries, exc,
            )
        if attempt < max_retries:
            await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    logger.error(
        "Notification dropped after %d attempts for user=%s title=%r",
        max_retries, job.user_id, job.title,
    )


async def worker() -> None:
    """
    Runs as a long-lived background task.
    Drains the notification queue and handles each job.
    """
    logger.info("Notification worker started")
    while True:
        job = await _queue.get()
        try:
            await _handle_job(job)
        except Exception as exc:
            logger.exception("Unexpected error in notification worker: %s", exc)
        finally:
            _queue.task_done()
