"""Worker process entry point for the orchestration services.

Each engine runs as its own process (shared-nothing): one `playout` worker
owning every linear channel and one `restream` worker owning every restream
destination. A worker consumes its control topics from PgQueuer and owns the
ffmpeg processes of its entities.

Startup:
    1. Load .env, configure structlog
    2. Build Process Registry, State Sync and the engine
    3. Reconcile rows left running/active by a previous process (RECONCILE_ON_BOOT)
    4. Initialize PgQueuer, register entrypoints, run the consumer loop

Graceful Shutdown (SIGTERM / SIGINT):
    stop the PgQueuer loop (wait for in-flight handlers)
    → engine.shutdown() (refuse starts, terminate owned processes, record stopped)
    → close the asyncpg pool → dispose the engine

Usage:
    python -m streamcore.worker playout
    python -m streamcore.worker restream
"""

import argparse
import asyncio
import signal
import sys

from dotenv import load_dotenv
from pgqueuer import PgQueuer

from streamcore.bus import initialize_pgqueuer
from streamcore.config import get_reconcile_on_boot
from streamcore.database import dispose_engine, get_session_factory
from streamcore.entrypoints import register_playout_entrypoints, register_restream_entrypoints
from streamcore.exceptions import ConfigurationError, PersistenceError
from streamcore.services.credential_resolver import PlatformCredentialResolver
from streamcore.services.playout_scheduler import PlayoutScheduler
from streamcore.services.process_registry import ProcessRegistry
from streamcore.services.restream_engine import RestreamEngine
from streamcore.services.state_sync import StateSync
from streamcore.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

SERVICES = ("playout", "restream")


async def reconcile(service: str, state: StateSync) -> list[str]:
    """Mark this service's orphaned rows stopped. Failures are logged, not fatal."""
    try:
        if service == "playout":
            return await state.reconcile_channels()
        return await state.reconcile_destinations()
    except PersistenceError as e:
        log.error("reconcile_failed", service=service, error=str(e))
        return []


async def stop_consuming(service: str, pgq: PgQueuer, consumer: asyncio.Task) -> None:
    """Stop the PgQueuer loop and wait for in-flight handlers to return.

    Runs before the engine shuts down so no start command can spawn a process
    after the engine has terminated the ones it owns.
    """
    pgq.shutdown.set()
    try:
        await asyncio.wait_for(consumer, timeout=30)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        log.warning("pgqueuer_stop_timeout", service=service)
    except Exception as e:
        log.error("pgqueuer_stopped_with_error", service=service, error=str(e))


async def run_service(service: str) -> None:
    """Run one engine until SIGTERM/SIGINT, then shut it down cleanly."""
    state = StateSync(get_session_factory())
    resolver: PlatformCredentialResolver | None = None

    if service == "playout":
        engine: PlayoutScheduler | RestreamEngine = PlayoutScheduler(
            state, ProcessRegistry(name="playout")
        )
    else:
        resolver = PlatformCredentialResolver()
        engine = RestreamEngine(state, resolver, ProcessRegistry(name="restream"))

    if get_reconcile_on_boot():
        await reconcile(service, state)

    pgq, pool = await initialize_pgqueuer()
    if service == "playout":
        register_playout_entrypoints(pgq, engine)
    else:
        register_restream_entrypoints(pgq, engine)

    stopping = asyncio.Event()

    def request_shutdown(signum: int) -> None:
        log.info(
            "shutdown_signal_received",
            signal=signum,
            signal_name=signal.Signals(signum).name,
        )
        stopping.set()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, request_shutdown, signum)

    consumer = asyncio.create_task(pgq.run(), name=f"pgqueuer:{service}")
    waiter = asyncio.create_task(stopping.wait())
    log.info("worker_started", service=service)

    try:
        done, _ = await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if consumer in done and consumer.exception():
            log.error(
                "worker_fatal_error",
                service=service,
                error=str(consumer.exception()),
                error_type=type(consumer.exception()).__name__,
            )
    finally:
        waiter.cancel()
        await stop_consuming(service, pgq, consumer)
        stopped = await engine.shutdown()
        log.info("engine_shutdown_complete", service=service, stopped=stopped)

        if resolver is not None:
            await resolver.close()
        await pool.close()
        log.info("asyncpg_pool_closed")
        await dispose_engine()
        log.info("sqlalchemy_engine_closed")


def main(argv: list[str] | None = None) -> None:
    """Worker process entry point.

    Exit Codes:
        0: Clean shutdown (SIGTERM/SIGINT received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    parser = argparse.ArgumentParser(description="Run a streamcore orchestration worker")
    parser.add_argument("service", choices=SERVICES, help="Engine this process runs")
    args = parser.parse_args(argv)

    load_dotenv()
    configure_logging()

    try:
        asyncio.run(run_service(args.service))
    except ConfigurationError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)
    except Exception as e:
        log.error("worker_fatal_error", service=args.service, error=str(e), exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully", service=args.service)


if __name__ == "__main__":
    main()
