"""
Worker-only process: consumes the stage queues without serving HTTP.

Pair it with an HTTP process started with WORKERS_ENABLED=false and a shared
REDIS_URL. SIGINT/SIGTERM stop intake and let in-flight executions finish.

    python -m prodgen_Server_API.cli.run_workers [--with-cron]
"""

from __future__ import annotations

import argparse
import asyncio
import signal

from dotenv import load_dotenv
from loguru import logger

from prodgen_Server_API.app.core.config import get_settings
from prodgen_Server_API.app.core.Logging.log_setup import setup_logging
from prodgen_Server_API.app.services.pipeline_cron import PipelineCronScheduler
from prodgen_Server_API.app.services.pipeline_runtime import PipelineRuntime


async def _run(with_cron: bool) -> None:
    settings = get_settings()
    if not settings.REDIS_URL:
        logger.warning("REDIS_URL is not set; this worker only sees jobs queued inside its own process")
    runtime = await PipelineRuntime.from_settings(settings)
    cron = PipelineCronScheduler.from_settings(runtime.orchestrator, settings) if with_cron else None

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    try:
        await runtime.start_workers()
        if cron is not None:
            await cron.start()
        logger.info(f"Worker process running queues: {', '.join(sorted(runtime.workers)) or 'none'}")
        await stop.wait()
        logger.info("Shutdown signal received; draining in-flight jobs")
    finally:
        if cron is not None:
            await cron.stop()
        await runtime.close()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run pipeline stage workers")
    parser.add_argument("--with-cron", action="store_true", help="Also register the stage cron schedules")
    args = parser.parse_args(argv)
    load_dotenv()
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    asyncio.run(_run(args.with_cron))


if __name__ == "__main__":
    main()
