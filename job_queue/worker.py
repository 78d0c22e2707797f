"""
Worker entry point — runs N scheduler loops plus one reaper.

Usage:
    python -m job_queue.worker                       # settings.yaml + env
    python -m job_queue.worker --workers 8 --types SendEmail,WarmupEmail
    outreach-worker --init-db                        # create tables first

Environment (see config/settings.py): DATABASE_URL, STORE_BACKEND,
WORKER_COUNT, WORKER_POLL_INTERVAL, WORKER_JOB_TYPES, REAPER_INTERVAL,
REAPER_STALE_THRESHOLD, RATE_LIMIT_<PROVIDER>, CONNECTOR_BASE_URL, ...
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import structlog

from dotenv import load_dotenv

from config.settings import Settings, load_settings
from job_queue.errors import ConfigurationError
from models.schemas import JobType

logger = structlog.get_logger()


def _parse_types(raw: str) -> list[str]:
    types = []
    for name in (t.strip() for t in raw.split(",")):
        if not name:
            continue
        job_type = JobType.parse(name)
        if job_type is None:
            raise ConfigurationError(f"Unknown job type: {name}")
        types.append(job_type.value)
    return types


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="outreach-worker", description="OutreachIQ job worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--workers", type=int, default=None, help="Scheduler loops (overrides WORKER_COUNT)")
    parser.add_argument("--types", default=None, help="Comma-separated job types to claim (default: all)")
    parser.add_argument("--init-db", action="store_true", help="Create tables before starting")
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.workers is not None:
        if args.workers < 1:
            raise ConfigurationError("--workers must be at least 1")
        settings.worker.worker_count = args.workers
    if args.types:
        settings.worker.eligible_types = _parse_types(args.types)
    else:
        settings.worker.eligible_types = _parse_types(",".join(settings.worker.eligible_types))
    return settings


async def run_worker(settings: Settings, init_db: bool = False,
                     stop_event: asyncio.Event = None, install_signals: bool = True):
    from backend.connector import create_mail_connector
    from database.session import close_db, init_db as create_tables
    from database.store_factory import create_stores
    from handlers import build_registry
    from job_queue.producer import JobProducer
    from job_queue.scheduler import WorkerPool

    stores = create_stores({"store_backend": settings.database.store_backend})
    if stores.backend == "sql" and init_db:
        await create_tables()

    connector = create_mail_connector(settings.connector)
    producer = JobProducer(stores.jobs, settings.retry.default_max_attempts)
    registry = build_registry(connector, producer, settings.handlers.timeouts,
                              settings.handlers.campaign_batch_size)

    missing = registry.missing()
    if missing:
        raise ConfigurationError(
            f"No handler registered for: {', '.join(t.value for t in missing)}"
        )

    pool = WorkerPool.from_settings(settings, stores, registry)
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in ((signal.SIGINT, signal.SIGTERM) if install_signals else ()):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows / non-main thread: rely on KeyboardInterrupt
            pass

    await pool.start()
    logger.info("outreach_worker_started",
                app=settings.app_name,
                store_backend=stores.backend,
                workers=settings.worker.worker_count,
                eligible_types=settings.worker.eligible_types or "all")
    try:
        await stop_event.wait()
    finally:
        await pool.stop()
        await connector.close()
        if stores.backend == "sql":
            await close_db()
        logger.info("outreach_worker_stopped")


def main(argv: list[str] = None) -> None:
    load_dotenv()                   # .env before any config is read
    args = build_parser().parse_args(argv)
    settings = apply_args(load_settings(args.config), args)
    try:
        asyncio.run(run_worker(settings, init_db=args.init_db))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
