"""PgQueuer initialization and publishing for the control event bus.

Control events travel as PgQueuer jobs: the topic is the job's entrypoint
name and the payload is the event's camelCase JSON encoded as UTF-8 bytes.
Delivery is at-least-once; consumers treat duplicates as no-ops.

Architecture Pattern:
    - AsyncpgPoolDriver: Connection pool shared by consumer and publisher
    - QueueManager: Schema installation (skipped when already installed)
    - Entrypoint Registration: see streamcore.entrypoints

Deployment:
    One worker process per engine. A job is claimed by exactly one consumer
    (FOR UPDATE SKIP LOCKED), so each engine runs as a single replica: two
    playout replicas would split one channel's commands between processes.

Usage:
    from streamcore.bus import initialize_pgqueuer, publish

    pgq, pool = await initialize_pgqueuer()
    await publish(pgq.connection, PLAYOUT_START, {"channelId": channel_id})
    await pgq.run()
"""

import json
from typing import Any

import asyncpg
from pgqueuer import PgQueuer
from pgqueuer.db import AsyncpgPoolDriver, Driver
from pgqueuer.qm import QueueManager
from pgqueuer.queries import Queries
from pydantic import BaseModel

from streamcore.config import get_bus_dsn
from streamcore.utils.logging import get_logger

log = get_logger(__name__)

POOL_MIN_SIZE = 2
POOL_MAX_SIZE = 10


def encode_payload(payload: BaseModel | dict[str, Any]) -> bytes:
    """Serialize an event (pydantic model or camelCase dict) to job bytes."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True, exclude_none=True)
    return json.dumps(payload, separators=(",", ":")).encode()


async def install_schema(driver: Driver) -> None:
    """Install the PgQueuer tables once; an existing install is left alone."""
    qm = QueueManager(driver)
    try:
        await qm.queries.install()
    except (asyncpg.exceptions.DuplicateObjectError, asyncpg.exceptions.DuplicateTableError):
        log.debug("pgqueuer_schema_already_installed")
        return
    log.info("pgqueuer_schema_installed")


async def initialize_pgqueuer() -> tuple[PgQueuer, asyncpg.Pool]:
    """Create the asyncpg pool, install the schema and build the PgQueuer.

    Returns:
        tuple[PgQueuer, asyncpg.Pool]: Consumer instance and its pool.

    Raises:
        ConfigurationError: If DATABASE_URL is not set.
        asyncpg.PostgresError: If the database connection fails.
    """
    dsn = get_bus_dsn()
    log.info("initializing_asyncpg_pool", min_size=POOL_MIN_SIZE, max_size=POOL_MAX_SIZE)
    pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=POOL_MIN_SIZE,
        max_size=POOL_MAX_SIZE,
        timeout=30,
    )

    driver = AsyncpgPoolDriver(pool)
    await install_schema(driver)
    pgq = PgQueuer(driver)
    log.info("pgqueuer_initialized")
    return pgq, pool


async def publish(
    target: Driver | Queries,
    topic: str,
    payload: BaseModel | dict[str, Any],
    priority: int = 0,
) -> list:
    """Enqueue one control event.

    Args:
        target: PgQueuer driver (or a Queries object built on one).
        topic: Entrypoint name, e.g. "playout:start".
        payload: Event model or camelCase dict.
        priority: PgQueuer priority (higher first).

    Returns:
        Job ids assigned by PgQueuer.
    """
    queries = target if isinstance(target, Queries) else Queries(target)
    job_ids = await queries.enqueue(topic, encode_payload(payload), priority)
    log.info("event_published", topic=topic, job_ids=[str(j) for j in job_ids])
    return job_ids
