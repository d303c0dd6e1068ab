"""Background worker.

Processes queued document imports and sweeps the scheduled PubMed author
searches until SIGINT/SIGTERM. Run one or more of these next to the API
server:

    python worker.py
"""
import asyncio
import logging
import signal

from cvrecon.config import settings
from cvrecon.logging_config import setup_logging
from cvrecon.pipelines.ingest import pubmed_schedule_loop
from cvrecon.pipelines.jobs import JobRunner

logger = logging.getLogger("cvrecon.worker")


async def main():
    setup_logging()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    runner = JobRunner()
    logger.info(f"Starting worker for {settings.app_name} v{settings.version}")
    await asyncio.gather(
        runner.run_forever(stop_event),
        pubmed_schedule_loop(stop_event),
    )
    logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
