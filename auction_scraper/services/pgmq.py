"""At-least-once message queue on top of the Postgres ``pgmq`` extension.

A read hides messages until their visibility deadline. A message is deleted
only when its handler returns ``MessageOutcome.ACK``; anything else leaves it
to resurface after the visibility timeout, which is what makes a crashed or
failed handler retry automatically.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ALREADY_EXISTS_MARKERS = ("already exists", "already a member")


class MessageOutcome(str, Enum):
    ACK = "ack"
    RETRY = "retry"


@dataclass(slots=True)
class QueueMessage:
    msg_id: int
    read_ct: int
    enqueued_at: datetime
    vt: datetime
    message: dict[str, Any]


MessageHandler = Callable[[QueueMessage], Awaitable[MessageOutcome]]
PoolGetter = Callable[[], Awaitable[asyncpg.Pool]]


@dataclass(slots=True)
class SubscribeOptions:
    poll_interval_seconds: float = 1.0
    batch_size: int = 1
    visibility_timeout_seconds: int = 600


@dataclass(slots=True)
class _Subscription:
    queue_name: str
    handler: MessageHandler
    options: SubscribeOptions
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class PgmqQueue:
    def __init__(self, get_pool: PoolGetter) -> None:
        self._get_pool = get_pool
        self._subscriptions: dict[str, _Subscription] = {}
        self._in_flight: set[asyncio.Task[None]] = set()

    async def ensure_queue(self, queue_name: str) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute("select pgmq.create($1::text)", queue_name)
        except asyncpg.PostgresError as exc:
            if not any(marker in str(exc) for marker in ALREADY_EXISTS_MARKERS):
                raise
            logger.info("queue already exists name=%s", queue_name)
            return
        logger.info("queue created name=%s", queue_name)

    async def send(self, queue_name: str, payload: dict[str, Any], delay_seconds: int = 0) -> int:
        pool = await self._get_pool()
        msg_id = await pool.fetchval(
            "select * from pgmq.send($1::text, $2::jsonb, $3::integer)",
            queue_name,
            json.dumps(payload),
            delay_seconds,
        )
        return int(msg_id)

    async def send_batch(self, queue_name: str, payloads: list[dict[str, Any]], delay_seconds: int = 0) -> list[int]:
        if not payloads:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select * from pgmq.send_batch($1::text, $2::jsonb[], $3::integer)",
            queue_name,
            [json.dumps(payload) for payload in payloads],
            delay_seconds,
        )
        return [int(row[0]) for row in rows]

    async def read(self, queue_name: str, visibility_timeout_seconds: int = 30, max_messages: int = 1) -> list[QueueMessage]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select msg_id, read_ct, enqueued_at, vt, message
            from pgmq.read($1::text, $2::integer, $3::integer)
            """,
            queue_name,
            visibility_timeout_seconds,
            max_messages,
        )
        return [
            QueueMessage(
                msg_id=int(row["msg_id"]),
                read_ct=int(row["read_ct"]),
                enqueued_at=row["enqueued_at"],
                vt=row["vt"],
                message=self._decode_payload(row["message"]),
            )
            for row in rows
        ]

    async def delete(self, queue_name: str, msg_id: int) -> bool:
        pool = await self._get_pool()
        deleted = await pool.fetchval("select pgmq.delete($1::text, $2::bigint)", queue_name, msg_id)
        return bool(deleted)

    async def delete_batch(self, queue_name: str, msg_ids: list[int]) -> list[int]:
        if not msg_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch("select * from pgmq.delete($1::text, $2::bigint[])", queue_name, msg_ids)
        return [int(row[0]) for row in rows]

    async def subscribe(
        self,
        queue_name: str,
        handler: MessageHandler,
        options: SubscribeOptions | None = None,
    ) -> None:
        if queue_name in self._subscriptions:
            raise RuntimeError(f"already subscribed to queue {queue_name!r}")

        await self.ensure_queue(queue_name)
        subscription = _Subscription(queue_name=queue_name, handler=handler, options=options or SubscribeOptions())
        subscription.task = asyncio.create_task(self._poll_loop(subscription), name=f"pgmq-poll:{queue_name}")
        self._subscriptions[queue_name] = subscription
        logger.info(
            "subscribed to queue name=%s poll_interval_seconds=%s batch_size=%s",
            queue_name,
            subscription.options.poll_interval_seconds,
            subscription.options.batch_size,
        )

    async def unsubscribe(self, queue_name: str) -> None:
        subscription = self._subscriptions.pop(queue_name, None)
        if subscription is None:
            return
        subscription.stop_event.set()
        if subscription.task is not None:
            await subscription.task
        logger.info("unsubscribed from queue name=%s", queue_name)

    async def poll_once(
        self,
        queue_name: str,
        handler: MessageHandler,
        options: SubscribeOptions,
        stop_event: asyncio.Event | None = None,
    ) -> int:
        """Read one batch and run the handler on each message in order."""
        messages = await self.read(queue_name, options.visibility_timeout_seconds, options.batch_size)
        handled = 0
        for message in messages:
            if stop_event is not None and stop_event.is_set():
                # Unhandled messages stay hidden until their visibility deadline, then redeliver.
                break
            task = asyncio.create_task(self._handle(queue_name, handler, message))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            await asyncio.shield(task)
            handled += 1
        return handled

    async def shutdown(self, grace_seconds: float = 30.0) -> None:
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.stop_event.set()

        pending: set[asyncio.Task[Any]] = {sub.task for sub in subscriptions if sub.task is not None}
        pending |= self._in_flight
        if not pending:
            logger.info("pgmq shutdown complete")
            return

        if self._in_flight:
            logger.info("waiting for %s in-flight handler(s) to complete", len(self._in_flight))
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("cancelled %s task(s) still running after %.1fs grace", len(still_running), grace_seconds)
            await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("pgmq shutdown complete")

    async def _poll_loop(self, subscription: _Subscription) -> None:
        options = subscription.options
        while not subscription.stop_event.is_set():
            with tracer.start_as_current_span("queue.poll_cycle") as span:
                span.set_attribute("queue.name", subscription.queue_name)
                try:
                    handled = await self.poll_once(
                        subscription.queue_name,
                        subscription.handler,
                        options,
                        stop_event=subscription.stop_event,
                    )
                    span.set_attribute("queue.messages_handled", handled)
                except Exception:
                    logger.exception("error polling queue name=%s", subscription.queue_name)

            try:
                await asyncio.wait_for(subscription.stop_event.wait(), timeout=options.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _handle(self, queue_name: str, handler: MessageHandler, message: QueueMessage) -> None:
        try:
            outcome = await handler(message)
        except Exception:
            logger.exception(
                "error processing message msg_id=%s queue=%s; left for redelivery",
                message.msg_id,
                queue_name,
            )
            return

        if outcome is not MessageOutcome.ACK:
            logger.info(
                "message msg_id=%s queue=%s left for retry after visibility timeout",
                message.msg_id,
                queue_name,
            )
            return

        try:
            await self.delete(queue_name, message.msg_id)
        except Exception:
            logger.exception("failed to delete handled message msg_id=%s queue=%s", message.msg_id, queue_name)

    @staticmethod
    def _decode_payload(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}
