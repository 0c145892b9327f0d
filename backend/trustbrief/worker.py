"""
Worker entrypoint: rq workers over the stage queues.

    trustbrief-worker                     # every queue
    trustbrief-worker discover enrich     # only these
    trustbrief-worker --burst             # drain the queues, then exit

Each queue gets as many worker processes as its registered concurrency
(settings.queue_concurrency). A process runs one job at a time on its own
event loop, database pool and provider clients, so a slow dependency ties
up at most that many jobs per queue.
"""

import argparse
import asyncio
import logging
import multiprocessing
from typing import Optional

from rq import SimpleWorker
from sqlalchemy.ext.asyncio import create_async_engine

from trustbrief.config import Settings, get_settings
from trustbrief.database import make_session_factory
from trustbrief.errors import QueueNotFoundError
from trustbrief.observability import configure_logging
from trustbrief.services.factory import build_services
from trustbrief.services.queue.tasks import WorkerRuntime, install_runtime

logger = logging.getLogger(__name__)


def build_runtime(settings: Settings) -> WorkerRuntime:
    """Services for one worker process, with every stage handler registered."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    services = build_services(settings, make_session_factory(engine))
    services.orchestrator.register_workers(settings.queue_concurrency)

    async def close() -> None:
        await services.close()
        await engine.dispose()

    return WorkerRuntime(loop, services.queues, on_close=close)


def run_worker(queue_names: list[str], burst: bool = False) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    runtime = build_runtime(settings)
    install_runtime(runtime)
    try:
        worker = SimpleWorker(runtime.queues.listen_order(queue_names), connection=runtime.queues.connection)
        logger.info(f"Worker {worker.name} listening on {', '.join(queue_names)}")
        worker.work(with_scheduler=True, burst=burst, logging_level=logging.INFO)
    finally:
        install_runtime(None)
        runtime.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run TrustBrief queue workers")
    parser.add_argument("queues", nargs="*", help="queues to work (default: all)")
    parser.add_argument("--burst", action="store_true", help="exit once the queues are empty")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    runtime = build_runtime(settings)
    try:
        names = args.queues or runtime.queues.queue_names
        plan = [name for name in names for _ in range(runtime.queues.concurrency(name))]
    except QueueNotFoundError as e:
        parser.error(e.message)
    finally:
        runtime.close()

    if len(plan) == 1:
        run_worker(plan, burst=args.burst)
        return

    processes = [
        multiprocessing.Process(
            target=run_worker,
            args=([name],),
            kwargs={"burst": args.burst},
            name=f"trustbrief-{name}-{i}",
        )
        for i, name in enumerate(plan)
    ]
    for process in processes:
        process.start()
    logger.info(f"Started {len(processes)} worker process(es) for {', '.join(names)}")
    for process in processes:
        process.join()


if __name__ == "__main__":
    main()
