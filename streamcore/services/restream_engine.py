"""Restream Fanout Engine: one live source → N independent destinations.

Each destination owns one Process Registry slot and one ffmpeg process that
pulls the stream from the ingest server and pushes it to the destination's
platform ingest. A destination failing (credentials, spawn, unplanned exit)
never affects its siblings.

Destination Lifecycle:
    start:  reserve slot → pending → resolve credentials → spawn → active
    exit:   clean code (0/255) → stopped; anything else → failed + message
    stop:   terminate (SIGTERM, grace, SIGKILL) → stopped

Start/Stop Races:
    The slot is reserved before credentials are resolved. A stop arriving
    during resolution cancels the slot; the later spawn() returns None and no
    process ever runs. Exit notifications of superseded or intentionally
    stopped runs are ignored because their handle no longer owns the slot.
"""

import asyncio

from streamcore.config import get_credential_timeout_seconds, get_source_rtmp_url
from streamcore.exceptions import (
    CredentialResolutionError,
    PersistenceError,
    ProcessExitError,
    SpawnError,
)
from streamcore.models import Destination, DestinationStatus, utcnow
from streamcore.services.credential_resolver import CredentialResolver
from streamcore.services.process_registry import ProcessHandle, ProcessRegistry
from streamcore.services.state_sync import StateSync
from streamcore.utils.ffmpeg import (
    CLEAN_EXIT_CODES,
    build_restream_args,
    join_ingest_url,
    redact_url,
)
from streamcore.utils.logging import get_logger

log = get_logger(__name__)


class RestreamEngine:
    """Fans a live stream out to its enabled destinations.

    Args:
        state: State Sync used for destination status writes.
        resolver: Turns a social account into an ingest target.
        registry: Process Registry owning the destinations' processes.
        credential_timeout: Bound on one credential resolution (seconds).
    """

    def __init__(
        self,
        state: StateSync,
        resolver: CredentialResolver,
        registry: ProcessRegistry | None = None,
        credential_timeout: float | None = None,
    ) -> None:
        self._state = state
        self._resolver = resolver
        self.registry = registry if registry is not None else ProcessRegistry(name="restream")
        self.credential_timeout = (
            credential_timeout
            if credential_timeout is not None
            else get_credential_timeout_seconds()
        )
        # destination id → stream id for destinations started by this process
        self._stream_of: dict[str, str] = {}
        self._closing = False

    def active_destinations(self) -> list[str]:
        return self.registry.ids()

    async def start_stream(self, stream_id: str, stream_key: str) -> dict[str, bool]:
        """Start every enabled destination of a stream concurrently.

        Returns:
            destination_id → True if its process is running.
        """
        try:
            targets = await self._state.list_enabled_destinations(stream_id)
        except PersistenceError as e:
            log.error("restream_start_stream_failed", stream_id=stream_id, error=str(e))
            return {}

        if not targets:
            log.info("restream_no_enabled_destinations", stream_id=stream_id)
            return {}

        log.info("restream_stream_starting", stream_id=stream_id, destinations=len(targets))
        results = await asyncio.gather(
            *(
                self.start_destination(
                    t.destination_id, stream_key, t.social_account_id, stream_id=stream_id
                )
                for t in targets
            ),
            return_exceptions=True,
        )

        outcome = {}
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                log.error(
                    "restream_destination_start_crashed",
                    destination_id=target.destination_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                outcome[target.destination_id] = False
            else:
                outcome[target.destination_id] = result
        return outcome

    async def stop_stream(self, stream_id: str) -> list[str]:
        """Stop every pending or active destination of a stream.

        Destinations running in this process but no longer marked live in the
        store are stopped as well.
        """
        try:
            destination_ids = await self._state.list_live_destinations(stream_id)
        except PersistenceError as e:
            log.error("restream_stop_stream_lookup_failed", stream_id=stream_id, error=str(e))
            destination_ids = []

        owned = [d for d in self.registry.ids() if self._stream_of.get(d) == stream_id]
        destination_ids = list(dict.fromkeys([*destination_ids, *owned]))

        await asyncio.gather(
            *(self.stop_destination(destination_id) for destination_id in destination_ids)
        )
        log.info("restream_stream_stopped", stream_id=stream_id, destinations=destination_ids)
        return destination_ids

    async def start_destination(
        self,
        destination_id: str,
        stream_key: str,
        social_account_id: str | None = None,
        stream_id: str | None = None,
    ) -> bool:
        """Start one destination.

        Args:
            destination_id: restream_destinations.id
            stream_key: Key the source stream is published under.
            social_account_id: Account to resolve; looked up if omitted.
            stream_id: Owning stream; looked up if omitted.

        Returns:
            True if an ffmpeg process is now pushing to the destination.
        """
        async with self.registry.serialized(destination_id):
            if self._closing:
                log.info("restream_start_rejected_shutting_down", destination_id=destination_id)
                return False
            handle = self.registry.register(destination_id)
            if handle is None:
                log.info("restream_destination_already_running", destination_id=destination_id)
                return False
            if stream_id is not None:
                self._stream_of[destination_id] = stream_id
            await self._state.record_transition(
                Destination,
                destination_id,
                DestinationStatus.PENDING,
                error_message=None,
                ended_at=None,
            )

        try:
            target = await asyncio.wait_for(
                self._resolve(destination_id, social_account_id),
                timeout=self.credential_timeout,
            )
        except CredentialResolutionError as e:
            await self._fail_before_start(handle, str(e))
            return False
        except asyncio.TimeoutError:
            await self._fail_before_start(
                handle, f"Credential resolution timed out after {self.credential_timeout:g}s"
            )
            return False
        except Exception as e:
            log.error(
                "restream_credential_resolution_crashed",
                destination_id=destination_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._fail_before_start(
                handle, f"Credential resolution failed: {type(e).__name__}"
            )
            return False

        if handle.cancelled:
            log.info("restream_destination_cancelled_before_start", destination_id=destination_id)
            return False

        source_url = join_ingest_url(get_source_rtmp_url(), stream_key)
        try:
            process = await self.registry.spawn(
                handle,
                build_restream_args(source_url, target.url),
                on_exit=self._on_exit,
            )
        except SpawnError as e:
            await self._fail_before_start(handle, str(e))
            return False
        if process is None:
            return False

        await self._state.record_transition(
            Destination,
            destination_id,
            DestinationStatus.ACTIVE,
            rtmp_url=target.rtmp_url,
            started_at=utcnow(),
            error_message=None,
        )
        log.info(
            "restream_destination_active",
            destination_id=destination_id,
            generation=handle.generation,
            target=redact_url(target.url),
        )
        return True

    async def stop_destination(self, destination_id: str) -> bool:
        """Stop one destination. Idempotent; always leaves it stopped."""
        async with self.registry.serialized(destination_id):
            terminated = await self.registry.terminate(destination_id)
            self._stream_of.pop(destination_id, None)
            recorded = await self._state.record_transition(
                Destination,
                destination_id,
                DestinationStatus.STOPPED,
                ended_at=utcnow(),
            )
        log.info(
            "restream_destination_stopped",
            destination_id=destination_id,
            terminated=terminated,
            recorded=recorded,
        )
        return terminated

    async def shutdown(self) -> list[str]:
        """Stop every owned destination and refuse further starts (service shutdown)."""
        self._closing = True
        destination_ids = self.registry.ids()
        await asyncio.gather(*(self.stop_destination(d) for d in destination_ids))
        log.info("restream_shutdown_complete", destinations=destination_ids)
        return destination_ids

    async def _resolve(self, destination_id: str, social_account_id: str | None):
        try:
            if social_account_id is None or destination_id not in self._stream_of:
                destination = await self._state.get_destination(destination_id)
                if destination is None:
                    raise CredentialResolutionError("Destination not found")
                self._stream_of.setdefault(destination_id, destination.stream_id)
                social_account_id = social_account_id or destination.social_account_id
            account = await self._state.get_account(social_account_id)
        except PersistenceError as e:
            raise CredentialResolutionError(f"Could not load social account: {e}") from e
        return await self._resolver.resolve(account)

    async def _fail_before_start(self, handle: ProcessHandle, message: str) -> None:
        if not self.registry.release(handle):
            # stopped while starting; the stop already recorded the outcome
            return
        self._stream_of.pop(handle.entity_id, None)
        log.warning(
            "restream_destination_start_failed",
            destination_id=handle.entity_id,
            error=message,
        )
        await self._state.record_transition(
            Destination,
            handle.entity_id,
            DestinationStatus.FAILED,
            error_message=message,
            ended_at=utcnow(),
        )

    async def _on_exit(self, handle: ProcessHandle, returncode: int) -> None:
        async with self.registry.serialized(handle.entity_id):
            if not self.registry.release(handle):
                return
            self._stream_of.pop(handle.entity_id, None)

            if returncode in CLEAN_EXIT_CODES:
                log.info(
                    "restream_destination_ended",
                    destination_id=handle.entity_id,
                    returncode=returncode,
                )
                await self._state.record_transition(
                    Destination,
                    handle.entity_id,
                    DestinationStatus.STOPPED,
                    ended_at=utcnow(),
                )
                return

            error = ProcessExitError(handle.entity_id, returncode, handle.last_stderr_line())
            log.warning(
                "restream_destination_failed",
                destination_id=handle.entity_id,
                returncode=returncode,
                error=str(error),
            )
            await self._state.record_transition(
                Destination,
                handle.entity_id,
                DestinationStatus.FAILED,
                error_message=str(error),
                ended_at=utcnow(),
            )
