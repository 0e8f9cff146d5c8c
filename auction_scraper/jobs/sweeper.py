from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


class StuckJobStore(Protocol):
    async def fail_stuck_jobs(self, *, started_before: datetime, error: str) -> list[str]: ...


def stuck_error_message(stale_after_seconds: int) -> str:
    minutes = max(1, stale_after_seconds // 60)
    return f"Job stuck in PROCESSING for more than {minutes} minutes; marked as timed out"


async def sweep_stuck_jobs(
    store: StuckJobStore,
    *,
    stale_after_seconds: int,
    now: datetime | None = None,
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=stale_after_seconds)
    swept = await store.fail_stuck_jobs(started_before=cutoff, error=stuck_error_message(stale_after_seconds))
    if swept:
        logger.warning("failed %s stuck job(s): %s", len(swept), ", ".join(swept))
    return swept


async def run_sweeper(
    store: StuckJobStore,
    *,
    interval_seconds: float,
    stale_after_seconds: int,
    stop_event: asyncio.Event,
) -> None:
    """Sweep immediately, then every ``interval_seconds`` until ``stop_event`` is set."""
    while not stop_event.is_set():
        try:
            await sweep_stuck_jobs(store, stale_after_seconds=stale_after_seconds)
        except Exception:
            logger.exception("stuck-job sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
