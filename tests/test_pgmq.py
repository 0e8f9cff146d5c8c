from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import asyncpg
import pytest

from auction_scraper.services.pgmq import MessageOutcome, PgmqQueue, QueueMessage, SubscribeOptions


class FakePool:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = list(rows or [])
        self.deleted: list[int] = []
        self.sent: list[dict[str, Any]] = []
        self.execute_error: Exception | None = None

    async def execute(self, query: str, *args: Any) -> str:
        if self.execute_error is not None:
            raise self.execute_error
        return "SELECT 1"

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        if "pgmq.read" in query:
            _, _, limit = args
            batch, self.rows = self.rows[:limit], self.rows[limit:]
            return batch
        if "pgmq.send_batch" in query:
            start = len(self.sent)
            self.sent.extend(json.loads(item) for item in args[1])
            return [(start + index + 1,) for index in range(len(args[1]))]
        if "pgmq.delete" in query:
            self.deleted.extend(args[1])
            return [(msg_id,) for msg_id in args[1]]
        return []

    async def fetchval(self, query: str, *args: Any) -> Any:
        if "pgmq.send" in query:
            self.sent.append(json.loads(args[1]))
            return len(self.sent)
        if "pgmq.delete" in query:
            self.deleted.append(args[1])
            return True
        return None


def _row(msg_id: int, message: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {"msg_id": msg_id, "read_ct": 1, "enqueued_at": now, "vt": now, "message": message}


def _queue(pool: FakePool) -> PgmqQueue:
    async def get_pool() -> FakePool:
        return pool

    return PgmqQueue(get_pool)


def test_poll_once_deletes_only_acked_messages() -> None:
    pool = FakePool([_row(1, {"n": 1}), _row(2, {"n": 2}), _row(3, {"n": 3})])
    queue = _queue(pool)

    async def handler(message: QueueMessage) -> MessageOutcome:
        if message.message["n"] == 2:
            return MessageOutcome.RETRY
        if message.message["n"] == 3:
            raise RuntimeError("boom")
        return MessageOutcome.ACK

    handled = asyncio.run(queue.poll_once("scrape_jobs", handler, SubscribeOptions(batch_size=3)))

    assert handled == 3
    assert pool.deleted == [1]


def test_poll_once_handles_messages_sequentially_in_order() -> None:
    pool = FakePool([_row(1, {"n": 1}), _row(2, {"n": 2})])
    queue = _queue(pool)
    events: list[str] = []

    async def handler(message: QueueMessage) -> MessageOutcome:
        n = message.message["n"]
        events.append(f"start-{n}")
        await asyncio.sleep(0.01)
        events.append(f"end-{n}")
        return MessageOutcome.ACK

    asyncio.run(queue.poll_once("scrape_jobs", handler, SubscribeOptions(batch_size=2)))

    assert events == ["start-1", "end-1", "start-2", "end-2"]
    assert pool.deleted == [1, 2]


def test_poll_once_decodes_text_payloads() -> None:
    pool = FakePool([_row(7, json.dumps({"jobId": "j"})), _row(8, "not json")])
    queue = _queue(pool)
    seen: list[dict[str, Any]] = []

    async def handler(message: QueueMessage) -> MessageOutcome:
        seen.append(message.message)
        return MessageOutcome.ACK

    asyncio.run(queue.poll_once("scrape_jobs", handler, SubscribeOptions(batch_size=5)))

    assert seen == [{"jobId": "j"}, {}]


def test_poll_once_stops_before_next_message_when_stopping() -> None:
    pool = FakePool([_row(1, {"n": 1}), _row(2, {"n": 2})])
    queue = _queue(pool)

    async def scenario() -> int:
        stop_event = asyncio.Event()

        async def handler(message: QueueMessage) -> MessageOutcome:
            stop_event.set()
            return MessageOutcome.ACK

        return await queue.poll_once("scrape_jobs", handler, SubscribeOptions(batch_size=2), stop_event=stop_event)

    assert asyncio.run(scenario()) == 1
    assert pool.deleted == [1]


def test_send_serializes_payload() -> None:
    pool = FakePool()
    queue = _queue(pool)

    msg_id = asyncio.run(queue.send("scrape_jobs", {"jobId": "job-1", "userId": "u", "url": "https://x"}))

    assert msg_id == 1
    assert pool.sent == [{"jobId": "job-1", "userId": "u", "url": "https://x"}]


def test_ensure_queue_tolerates_existing_queue() -> None:
    pool = FakePool()
    pool.execute_error = asyncpg.exceptions.DuplicateTableError('relation "q_scrape_jobs" already exists')

    asyncio.run(_queue(pool).ensure_queue("scrape_jobs"))


def test_ensure_queue_raises_other_errors() -> None:
    pool = FakePool()
    pool.execute_error = asyncpg.exceptions.UndefinedFunctionError("function pgmq.create(text) does not exist")

    with pytest.raises(asyncpg.PostgresError):
        asyncio.run(_queue(pool).ensure_queue("scrape_jobs"))


def test_shutdown_waits_for_in_flight_handler() -> None:
    pool = FakePool([_row(1, {"n": 1})])
    queue = _queue(pool)
    finished: list[int] = []

    async def scenario() -> None:
        started = asyncio.Event()

        async def handler(message: QueueMessage) -> MessageOutcome:
            started.set()
            await asyncio.sleep(0.05)
            finished.append(message.msg_id)
            return MessageOutcome.ACK

        await queue.subscribe("scrape_jobs", handler, SubscribeOptions(poll_interval_seconds=0.01))
        await started.wait()
        await queue.shutdown(grace_seconds=5)

    asyncio.run(scenario())

    assert finished == [1]
    assert pool.deleted == [1]


def test_shutdown_cancels_handler_past_grace_without_acking() -> None:
    pool = FakePool([_row(1, {"n": 1})])
    queue = _queue(pool)

    async def scenario() -> None:
        started = asyncio.Event()

        async def handler(message: QueueMessage) -> MessageOutcome:
            started.set()
            await asyncio.sleep(10)
            return MessageOutcome.ACK

        await queue.subscribe("scrape_jobs", handler, SubscribeOptions(poll_interval_seconds=0.01))
        await started.wait()
        await queue.shutdown(grace_seconds=0.05)

    asyncio.run(scenario())

    assert pool.deleted == []


def test_batch_send_and_delete() -> None:
    pool = FakePool()
    queue = _queue(pool)

    async def scenario() -> tuple[list[int], list[int], list[int]]:
        sent = await queue.send_batch("scrape_jobs", [{"n": 1}, {"n": 2}])
        deleted = await queue.delete_batch("scrape_jobs", sent)
        empty = await queue.send_batch("scrape_jobs", [])
        return sent, deleted, empty

    sent, deleted, empty = asyncio.run(scenario())

    assert sent == [1, 2]
    assert deleted == [1, 2]
    assert empty == []
    assert pool.sent == [{"n": 1}, {"n": 2}]


def test_unsubscribe_stops_polling() -> None:
    pool = FakePool()
    queue = _queue(pool)

    async def handler(message: QueueMessage) -> MessageOutcome:
        return MessageOutcome.ACK

    async def scenario() -> None:
        await queue.subscribe("scrape_jobs", handler, SubscribeOptions(poll_interval_seconds=0.01))
        with pytest.raises(RuntimeError):
            await queue.subscribe("scrape_jobs", handler)
        await queue.unsubscribe("scrape_jobs")
        pool.rows.append(_row(9, {"n": 9}))
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert pool.rows and pool.rows[0]["msg_id"] == 9
    assert pool.deleted == []
