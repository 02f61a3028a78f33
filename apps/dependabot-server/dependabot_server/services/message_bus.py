"""Durable, at-least-once message bus backed by the application database.

Messages live in ``bus_messages`` until a handler finishes them. Producers
either ``enqueue`` inside their own transaction (so state changes and the
messages they imply commit together) or ``publish`` standalone. A single
dispatcher claims due rows, runs the topic's handler and deletes the row on
success; failures are retried with back-off and eventually parked.
Handlers receive the message id so they can de-duplicate redeliveries.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Awaitable
from typing import Callable

from sqlalchemy import and_
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.orm import Session

from dependabot_server.config import settings
from dependabot_server.db import db_session
from dependabot_server.models import BusMessage

logger = logging.getLogger(__name__)

TOPIC_PROCESS_SYNCHRONIZATION = "process-synchronization"
TOPIC_TRIGGER_UPDATE_JOBS = "trigger-update-jobs"
TOPIC_UPDATE_JOB_CHECK_STATE = "update-job-check-state"
TOPIC_UPDATE_JOB_COLLECT_LOGS = "update-job-collect-logs"
TOPIC_REPOSITORY_CREATED = "repository-created"
TOPIC_REPOSITORY_UPDATED = "repository-updated"
TOPIC_REPOSITORY_DELETED = "repository-deleted"

MAX_BACKOFF_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    id: str
    topic: str
    payload: dict[str, Any]
    attempts: int = 1


Handler = Callable[[Message], Awaitable[None]]


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class MessageBus:
    def __init__(
        self,
        session_factory: Any = None,
        poll_seconds: float | None = None,
        max_attempts: int | None = None,
        concurrency: int | None = None,
        lease_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.bus_poll_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.bus_max_attempts
        self.concurrency = concurrency if concurrency is not None else settings.bus_concurrency
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.bus_lease_seconds
        self._handlers: dict[str, Handler] = {}
        self._wakeup: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopping = False
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    def enqueue(
        self,
        db: Session,
        topic: str,
        payload: dict[str, Any],
        delay: timedelta | None = None,
    ) -> str:
        """Add a message to the caller's transaction; it is sent on commit."""
        message_id = uuid.uuid4().hex
        db.add(
            BusMessage(
                id=message_id,
                topic=topic,
                payload=payload,
                status="queued",
                attempts=0,
                max_attempts=self.max_attempts,
                available_at=_utcnow() + (delay or timedelta()),
            )
        )
        self._notify()
        return message_id

    async def publish(self, topic: str, payload: dict[str, Any], delay: timedelta | None = None) -> str:
        def _insert() -> str:
            with db_session(self.session_factory) as db:
                return self.enqueue(db, topic, payload, delay)

        message_id = await asyncio.to_thread(_insert)
        logger.debug(f"Published {topic} ({message_id})")
        return message_id

    def _notify(self) -> None:
        # enqueue also runs in worker threads (asyncio.to_thread)
        if self._wakeup is None or self._loop is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wakeup.set()
        else:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, handler: Handler) -> None:
        if topic in self._handlers:
            logger.warning(f"Replacing handler for topic {topic}")
        self._handlers[topic] = handler

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="message-bus")
        logger.info(f"Message bus started ({len(self._handlers)} topics)")

    async def stop(self) -> None:
        """Stop claiming new messages and wait for in-flight handlers."""
        if self._task is None:
            return
        self._stopping = True
        self._notify()
        await self._task
        self._task = None
        self._wakeup = None
        self._loop = None
        logger.info("Message bus stopped")

    async def drain(self, max_rounds: int = 100) -> int:
        """Process every currently due message in-line; returns how many ran."""
        processed = 0
        for _ in range(max_rounds):
            claimed = await asyncio.to_thread(self._claim_sync, self.concurrency)
            if not claimed:
                break
            for message in claimed:
                await self._process(message)
                processed += 1
        return processed

    async def _run(self) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)
        while not self._stopping:
            free = self.concurrency - len(self._inflight)
            claimed: list[Message] = []
            if free > 0:
                try:
                    claimed = await asyncio.to_thread(self._claim_sync, free)
                except Exception:
                    logger.exception("Message bus claim failed")

            for message in claimed:
                task = asyncio.create_task(self._process_limited(semaphore, message))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)

            if not claimed:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_seconds)
                except asyncio.TimeoutError:
                    pass

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _process_limited(self, semaphore: asyncio.Semaphore, message: Message) -> None:
        async with semaphore:
            await self._process(message)

    async def _process(self, message: Message) -> None:
        handler = self._handlers.get(message.topic)
        if handler is None:
            logger.warning(f"No handler for topic {message.topic}; dropping message {message.id}")
            await asyncio.to_thread(self._complete_sync, message.id)
            return

        try:
            await handler(message)
        except Exception as e:
            logger.exception(f"Handler for {message.topic} failed (message {message.id}, attempt {message.attempts})")
            try:
                await asyncio.to_thread(self._fail_sync, message, repr(e))
            except Exception:
                logger.exception(f"Could not reschedule message {message.id}")
            return

        await asyncio.to_thread(self._complete_sync, message.id)

    # ------------------------------------------------------------------
    # Storage (sync; run via asyncio.to_thread)
    # ------------------------------------------------------------------

    def _claim_sync(self, limit: int) -> list[Message]:
        now = _utcnow()
        due = or_(
            and_(BusMessage.status == "queued", BusMessage.available_at <= now),
            and_(BusMessage.status == "processing", BusMessage.lease_expires_at <= now),
        )
        claimed: list[Message] = []
        with db_session(self.session_factory) as db:
            candidates = db.execute(
                select(BusMessage.id, BusMessage.status, BusMessage.attempts)
                .where(due)
                .order_by(BusMessage.available_at, BusMessage.created)
                .limit(limit)
            ).all()

            for message_id, status, attempts in candidates:
                result = db.execute(
                    update(BusMessage)
                    .where(BusMessage.id == message_id, BusMessage.status == status, BusMessage.attempts == attempts)
                    .values(
                        status="processing",
                        attempts=attempts + 1,
                        lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                    )
                )
                if result.rowcount != 1:
                    continue  # someone else got it
                row = db.get(BusMessage, message_id)
                claimed.append(Message(id=row.id, topic=row.topic, payload=dict(row.payload or {}), attempts=attempts + 1))
        return claimed

    def _complete_sync(self, message_id: str) -> None:
        with db_session(self.session_factory) as db:
            row = db.get(BusMessage, message_id)
            if row is not None:
                db.delete(row)

    def _fail_sync(self, message: Message, error: str) -> None:
        with db_session(self.session_factory) as db:
            row = db.get(BusMessage, message.id)
            if row is None:
                return
            row.last_error = error[:2000]
            row.lease_expires_at = None
            if message.attempts >= row.max_attempts:
                row.status = "failed"
                logger.error(f"Message {message.id} ({message.topic}) failed {message.attempts} times; parked")
                return
            backoff = min(5 * 2 ** (message.attempts - 1), MAX_BACKOFF_SECONDS)
            row.status = "queued"
            row.available_at = _utcnow() + timedelta(seconds=backoff)


# Process-wide bus used by the HTTP layer and background services
message_bus = MessageBus()
