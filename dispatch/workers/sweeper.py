"""
Background Sweep Workers
========================

Two periodic loops:

* **lifecycle** (every ``lifecycle_sweep_interval_seconds``) -- applies the
  timeout auto-transitions (PENDING -> DISPUTED, ACCEPTED -> CANCELLED,
  DELIVERED -> COMPLETED).
* **location** (every ``location_sweep_interval_seconds``) -- archives
  cached positions older than ``archive_after_seconds`` into history and
  evicts them, prunes history past the retention window, and purges
  expired entries from the in-process cache.

Concurrency safety
------------------
* A **Redis distributed lock** per loop ensures only one instance sweeps at
  a time across API processes.  Without Redis the sweep runs unlocked.
* Sweep items re-check the origin status before writing, so a delivery that
  moved on since it was selected is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dispatch.core import DispatchCore
from dispatch.infrastructure.locks import DistributedLock

logger = logging.getLogger(__name__)

_tasks: list[asyncio.Task] = []
_stop_event: Optional[asyncio.Event] = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweepers(core: DispatchCore, redis: Optional[aioredis.Redis]) -> None:
    global _stop_event
    _stop_event = asyncio.Event()
    _tasks.append(
        asyncio.create_task(
            _loop(
                "lifecycle",
                core.config.lifecycle_sweep_interval_seconds,
                lambda: run_lifecycle_cycle(core, redis),
            )
        )
    )
    _tasks.append(
        asyncio.create_task(
            _loop(
                "location",
                core.config.location_sweep_interval_seconds,
                lambda: run_location_cycle(core, redis),
            )
        )
    )
    logger.info(
        "Sweep workers started (lifecycle=%ds, location=%ds)",
        core.config.lifecycle_sweep_interval_seconds,
        core.config.location_sweep_interval_seconds,
    )


async def stop_sweepers() -> None:
    if _stop_event:
        _stop_event.set()
    for task in _tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    _tasks.clear()
    logger.info("Sweep workers stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(name: str, interval: int, cycle: Callable[[], Awaitable[object]]) -> None:
    """Periodic loop: run a cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await cycle()
        except Exception:
            logger.exception("Unhandled error in %s sweep", name)
        try:
            await asyncio.wait_for(_stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def _locked(
    redis: Optional[aioredis.Redis],
    name: str,
    ttl_seconds: int,
    cycle: Callable[[], Awaitable[object]],
):
    if redis is None:
        return await cycle()
    lock = DistributedLock(redis, f"sweep:{name}", ttl_seconds=ttl_seconds)
    try:
        acquired = await lock.acquire()
    except (RedisError, OSError):
        logger.warning("Redis unavailable for %s sweep lock; sweeping unlocked", name)
        return await cycle()
    if not acquired:
        logger.debug("Lock held by another worker – skipping %s sweep", name)
        return None
    try:
        return await cycle()
    finally:
        try:
            await lock.release()
        except (RedisError, OSError):
            logger.warning("Could not release %s sweep lock; it will expire", name)


async def run_lifecycle_cycle(
    core: DispatchCore, redis: Optional[aioredis.Redis] = None
) -> Optional[dict[str, int]]:
    """One auto-transition pass.  Returns applied counts per rule."""
    return await _locked(
        redis,
        "lifecycle",
        max(60, core.config.lifecycle_sweep_interval_seconds),
        core.state_machine.run_auto_transitions,
    )


async def run_location_cycle(
    core: DispatchCore, redis: Optional[aioredis.Redis] = None
) -> Optional[dict[str, int]]:
    """One archive / prune / purge pass."""

    async def cycle() -> dict[str, int]:
        archived = await core.tracking.archive_stale(
            timedelta(seconds=core.config.archive_after_seconds)
        )
        pruned = await core.tracking.prune_history(
            timedelta(days=core.config.history_retention_days)
        )
        purged = await core.store.purge_expired()
        return {"archived": archived, "pruned": sum(pruned), "purged": purged}

    return await _locked(
        redis,
        "location",
        max(60, core.config.location_sweep_interval_seconds),
        cycle,
    )
