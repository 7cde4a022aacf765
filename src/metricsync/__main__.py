"""
Main entrypoint: runs the sync scheduler as a standalone worker.

FastAPI runs separately under uvicorn; it hosts its own scheduler unless
METRICSYNC_RUN_SCHEDULER_IN_API=false, in which case run this worker.

Usage:
    python -m metricsync                            # scheduler worker
    python -m metricsync sync PROJECT [single|multi]  # one manual sync, then exit
    uvicorn metricsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_worker() -> None:
    from metricsync.db.engine import get_engine
    from metricsync.sync.service import SyncService

    service = SyncService(get_engine())
    await service.restore_jobs()
    service.scheduler.start()
    logger.info("Worker is running. Press Ctrl+C to stop.")

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        service.scheduler.stop()
        await service.scheduler.wait_for_running()
        logger.info("Goodbye.")


async def _run_once(project_id: str, scope_type: str) -> int:
    from metricsync.db.engine import get_engine
    from metricsync.sync.errors import ConfigError
    from metricsync.sync.service import SyncService

    service = SyncService(get_engine())
    try:
        result = await service.trigger_manual_sync(project_id, scope_type)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    # Dispatch on first argument: `python -m metricsync sync ...` or just `python -m metricsync`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        if len(sys.argv) < 3:
            print("usage: python -m metricsync sync PROJECT [single|multi]", file=sys.stderr)
            sys.exit(2)
        scope = sys.argv[3] if len(sys.argv) > 3 else "single"
        sys.exit(asyncio.run(_run_once(sys.argv[2], scope)))
    else:
        asyncio.run(_run_worker())
