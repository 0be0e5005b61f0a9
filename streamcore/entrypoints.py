"""PgQueuer entrypoint definitions for the control topics.

Each entrypoint decodes the job payload, validates it against the topic's
event model and hands it to the engine. Engines serialize commands per entity
and treat duplicates as no-ops, so at-least-once delivery is safe.

Malformed payloads are logged and dropped (the handler returns normally):
re-delivering a payload that can never validate would only repeat the error.

Entrypoints:
    playout worker:  playout:start, playout:stop, playout:skip
    restream worker: stream:start, stream:stop, restream:start, restream:stop
"""

import json

from pgqueuer import PgQueuer
from pgqueuer.models import Job
from pydantic import ValidationError

from streamcore.schemas.events import (
    PLAYOUT_SKIP,
    PLAYOUT_START,
    PLAYOUT_STOP,
    RESTREAM_START,
    RESTREAM_STOP,
    STREAM_START,
    STREAM_STOP,
    ControlEvent,
    PlayoutSkipEvent,
    PlayoutStartEvent,
    PlayoutStopEvent,
    RestreamStartEvent,
    RestreamStopEvent,
    StreamStartEvent,
    StreamStopEvent,
)
from streamcore.services.playout_scheduler import PlayoutScheduler
from streamcore.services.restream_engine import RestreamEngine
from streamcore.utils.logging import get_logger

log = get_logger(__name__)


def parse_event(topic: str, model: type[ControlEvent], job: Job) -> ControlEvent | None:
    """Decode and validate a job payload; None if it is malformed."""
    if job.payload is None:
        log.error("event_payload_missing", topic=topic, job_id=str(job.id))
        return None

    try:
        data = json.loads(job.payload)
        return model.model_validate(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        log.error("event_payload_undecodable", topic=topic, job_id=str(job.id), error=str(e))
    except ValidationError as e:
        log.error(
            "event_payload_invalid",
            topic=topic,
            job_id=str(job.id),
            errors=e.errors(include_url=False, include_input=False),
        )
    return None


def register_playout_entrypoints(pgq: PgQueuer, scheduler: PlayoutScheduler) -> None:
    """Register the playout topics with a PgQueuer instance.

    Args:
        pgq: Initialized PgQueuer instance
        scheduler: Playout scheduler owning this worker's channels
    """

    @pgq.entrypoint(PLAYOUT_START)
    async def playout_start(job: Job) -> None:
        event = parse_event(PLAYOUT_START, PlayoutStartEvent, job)
        if event:
            await scheduler.start(event.channel_id, stream_key=event.stream_key, loop=event.loop)

    @pgq.entrypoint(PLAYOUT_STOP)
    async def playout_stop(job: Job) -> None:
        event = parse_event(PLAYOUT_STOP, PlayoutStopEvent, job)
        if event:
            await scheduler.stop(event.channel_id)

    @pgq.entrypoint(PLAYOUT_SKIP)
    async def playout_skip(job: Job) -> None:
        event = parse_event(PLAYOUT_SKIP, PlayoutSkipEvent, job)
        if event:
            await scheduler.skip(event.channel_id)

    log.info("entrypoints_registered", topics=[PLAYOUT_START, PLAYOUT_STOP, PLAYOUT_SKIP])


def register_restream_entrypoints(pgq: PgQueuer, engine: RestreamEngine) -> None:
    """Register the stream and restream topics with a PgQueuer instance.

    Args:
        pgq: Initialized PgQueuer instance
        engine: Restream engine owning this worker's destinations
    """

    @pgq.entrypoint(STREAM_START)
    async def stream_start(job: Job) -> None:
        event = parse_event(STREAM_START, StreamStartEvent, job)
        if event:
            await engine.start_stream(event.stream_id, event.stream_key)

    @pgq.entrypoint(STREAM_STOP)
    async def stream_stop(job: Job) -> None:
        event = parse_event(STREAM_STOP, StreamStopEvent, job)
        if event:
            await engine.stop_stream(event.stream_id)

    @pgq.entrypoint(RESTREAM_START)
    async def restream_start(job: Job) -> None:
        event = parse_event(RESTREAM_START, RestreamStartEvent, job)
        if event:
            await engine.start_destination(
                event.destination_id,
                event.stream_key,
                social_account_id=event.social_account_id,
            )

    @pgq.entrypoint(RESTREAM_STOP)
    async def restream_stop(job: Job) -> None:
        event = parse_event(RESTREAM_STOP, RestreamStopEvent, job)
        if event:
            await engine.stop_destination(event.destination_id)

    log.info(
        "entrypoints_registered",
        topics=[STREAM_START, STREAM_STOP, RESTREAM_START, RESTREAM_STOP],
    )
