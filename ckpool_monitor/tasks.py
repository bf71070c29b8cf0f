import asyncio
import concurrent.futures
import logging
import time

from .config import (
    CACHE_PRUNE_INITIAL_DELAY_SECONDS,
    CACHE_PRUNE_INTERVAL_HOURS,
    CACHE_RETENTION_DAYS,
    CACHE_THREAD_POOL_SIZE,
    RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
)

log = logging.getLogger("CKPoolMonitor.Tasks")


async def run_in_cache_executor(app, func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(app["cache_executor"], func, *args)


async def persist_miner_cache(app) -> bool:
    """Write the miner cache if anything changed since the last write."""
    return await run_in_cache_executor(app, app["miner_cache"].persist_if_dirty)


async def run_cache_prune(app, max_age_days: float = CACHE_RETENTION_DAYS) -> int:
    """One eviction pass over the miner cache, followed by a write if needed."""
    cache = app["miner_cache"]
    removed = await run_in_cache_executor(app, cache.prune, max_age_days)
    if removed:
        await persist_miner_cache(app)
    log.info(f"[PRUNER] Cache prune complete: {removed} removed, {cache.get_stats()['workers']} workers kept")
    return removed


async def cache_pruner_task(app, initial_delay: float = CACHE_PRUNE_INITIAL_DELAY_SECONDS,
                            interval: float = CACHE_PRUNE_INTERVAL_HOURS * 3600):
    log.info(f"Cache pruner task started. First pass in {initial_delay}s, then every {interval}s.")
    await asyncio.sleep(initial_delay)
    while True:
        try:
            await run_cache_prune(app)
        except Exception:
            log.error("Error in cache pruner task:", exc_info=True)
        await asyncio.sleep(interval)


async def rate_limit_cleanup_task(app, interval: float = RATE_LIMIT_CLEANUP_INTERVAL_SECONDS):
    log.info("Rate limit cleanup task started.")
    while True:
        await asyncio.sleep(interval)
        app["rate_limiter"].cleanup()


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    app["start_time"] = time.time()
    app["cache_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=CACHE_THREAD_POOL_SIZE)
    app["tasks"] = []

    cache = app["miner_cache"]
    await run_in_cache_executor(app, cache.load)
    raised = await run_in_cache_executor(app, cache.seed_from_worker_files)
    if raised:
        log.info(f"Raised {raised} cached best difficulties from ckpool worker files")
    await persist_miner_cache(app)

    await app["mempool_client"].start()

    app["tasks"].extend(
        [
            asyncio.create_task(cache_pruner_task(app)),
            asyncio.create_task(rate_limit_cleanup_task(app)),
        ]
    )
    log.info("Background tasks initialized")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    if "cache_executor" in app:
        if await persist_miner_cache(app):
            log.info("Miner cache saved on shutdown.")
        app["cache_executor"].shutdown(wait=True)
        log.info("cache_executor shut down.")

    await app["mempool_client"].stop()
