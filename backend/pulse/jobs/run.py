import argparse
import asyncio
import logging
import signal

from pulse.domain.connectors.registry import ConnectorRegistry
from pulse.domain.queue.lanes import LANE_NAMES
from pulse.infra.db import dispose_engine, get_engine, get_session_factory
from pulse.infra.logging import configure_logging
from pulse.infra.metrics import configure_metrics
from pulse.infra.redis import close_redis_client, get_redis_client
from pulse.infra.tracing import configure_tracing, instrument_sqlalchemy, shutdown_tracing
from pulse.jobs.context import JobAdapters
from pulse.jobs.worker import WorkerSupervisor
from pulse.settings import settings

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run queue workers")
    parser.add_argument("--lane", action="append", dest="lanes", choices=LANE_NAMES, help="Lane to work (repeatable)")
    parser.add_argument("--once", action="store_true", help="Run one scheduler tick and one batch per lane, then exit")
    parser.add_argument("--no-scheduler", action="store_true", help="Do not fire repeatable schedules")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between polls of an idle lane")
    return parser.parse_args(argv)


def build_adapters() -> JobAdapters:
    # Connector protocols live outside this service; deployments register handlers here.
    return JobAdapters(redis_client=get_redis_client(), connectors=ConnectorRegistry())


async def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    configure_logging()
    configure_metrics(settings.metrics_enabled)
    configure_tracing(service_name="pulse-worker")
    instrument_sqlalchemy(get_engine())

    lane_names = args.lanes or settings.worker_lanes or list(LANE_NAMES)
    supervisor = WorkerSupervisor(
        get_session_factory(),
        build_adapters(),
        lane_names=lane_names,
        run_scheduler=settings.scheduler_enabled and not args.no_scheduler,
        poll_interval=args.interval,
    )
    try:
        await supervisor.prepare()
        if args.once:
            processed = await supervisor.run_once()
            logger.info("worker_run_once_complete", extra={"extra": processed})
            return

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, stop_requested.set)
        supervisor.start()
        await stop_requested.wait()
        logger.info("worker_shutdown_requested")
        await supervisor.stop()
    finally:
        await close_redis_client()
        await dispose_engine()
        shutdown_tracing()


if __name__ == "__main__":
    asyncio.run(main())
