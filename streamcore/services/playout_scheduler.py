"""Playout Scheduler: continuous sequential playback of a channel playlist.

Each running channel owns one control task and one Process Registry slot.
The control task plays the snapshot item by item, one ffmpeg process per
item, reading at native rate (-re) and publishing to the linear ingest
application under the channel's stream key.

State Machine:
    Stopped --start (non-empty snapshot)--> Running
    Running --stop | end of non-looping playlist | spawn error--> Stopped

Loop (while the channel's slot is still registered):
    1. Persist current_item_index of the item about to play (write-before-play)
    2. Spawn ffmpeg for the item
    3. Await exit
    4. Clean exit, skip (intentional terminate) and abnormal exit all advance
       by one, so a corrupt file never stalls the channel
    5. Past the end: loop → refresh per policy and wrap to 0; else stop

Playlist Edits:
    Edits never affect the item that is playing. With the default
    PlaylistRefreshPolicy.WRAPAROUND they are picked up when the index wraps;
    NEVER keeps the start snapshot; EACH_ITEM reloads between items.

Commands:
    start/stop/skip are applied under the registry's per-channel lock, so
    duplicate and out-of-order deliveries for one channel are applied in
    delivery order; start on a running channel and stop/skip on a stopped
    channel are no-ops.
"""

import asyncio
from dataclasses import dataclass

from streamcore.config import (
    PlaylistRefreshPolicy,
    get_linear_rtmp_url,
    get_playlist_refresh_policy,
)
from streamcore.exceptions import PersistenceError, ProcessExitError, SpawnError
from streamcore.models import Channel, ChannelStatus
from streamcore.services.process_registry import ProcessHandle, ProcessRegistry
from streamcore.services.state_sync import PlaylistEntry, StateSync
from streamcore.utils.ffmpeg import CLEAN_EXIT_CODES, build_playout_args, join_ingest_url
from streamcore.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class PlayoutRun:
    """Mutable state of one run of one channel (owned by its control task)."""

    channel_id: str
    output_url: str
    loop: bool
    playlist: list[PlaylistEntry]
    index: int = 0

    @property
    def current(self) -> PlaylistEntry:
        return self.playlist[self.index]


class PlayoutScheduler:
    """Drives one control loop per running linear channel.

    Args:
        state: State Sync used for snapshots and channel status writes.
        registry: Process Registry owning the channels' ffmpeg processes.
        refresh_policy: When running channels pick up playlist edits.
    """

    def __init__(
        self,
        state: StateSync,
        registry: ProcessRegistry | None = None,
        refresh_policy: PlaylistRefreshPolicy | None = None,
    ) -> None:
        self._state = state
        self.registry = registry if registry is not None else ProcessRegistry(name="playout")
        self.refresh_policy = (
            refresh_policy if refresh_policy is not None else get_playlist_refresh_policy()
        )
        self._runs: dict[ProcessHandle, PlayoutRun] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

    def active_channels(self) -> list[str]:
        return self.registry.ids()

    def current_index(self, channel_id: str) -> int | None:
        """Index of the item the channel is playing, or None if not running."""
        handle = self.registry.get(channel_id)
        run = self._runs.get(handle) if handle else None
        return run.index if run else None

    async def start(
        self,
        channel_id: str,
        stream_key: str | None = None,
        loop: bool | None = None,
    ) -> bool:
        """Start playout for a channel.

        Args:
            channel_id: linear_channels.id
            stream_key: Output key; defaults to the channel's stored key.
            loop: Loop flag; defaults to the channel's stored loop_playlist.

        Returns:
            True if a new run was started, False for a no-op (already running,
            unknown channel, empty playlist, store unavailable).
        """
        async with self.registry.serialized(channel_id):
            if self._closing:
                log.info("playout_start_rejected_shutting_down", channel_id=channel_id)
                return False
            if channel_id in self.registry:
                log.info("playout_already_running", channel_id=channel_id)
                return False

            try:
                channel = await self._state.get_channel(channel_id)
                playlist = await self._state.load_playlist(channel_id) if channel else []
            except PersistenceError as e:
                log.error("playout_start_failed", channel_id=channel_id, error=str(e))
                return False

            if channel is None:
                log.warning("playout_channel_not_found", channel_id=channel_id)
                return False

            if not playlist:
                log.warning("playout_empty_playlist", channel_id=channel_id)
                await self._state.record_transition(Channel, channel_id, ChannelStatus.STOPPED)
                return False

            handle = self.registry.register(channel_id)
            run = PlayoutRun(
                channel_id=channel_id,
                output_url=join_ingest_url(get_linear_rtmp_url(), stream_key or channel.stream_key),
                loop=channel.loop_playlist if loop is None else loop,
                playlist=playlist,
            )
            self._runs[handle] = run
            await self._state.record_transition(Channel, channel_id, ChannelStatus.RUNNING)
            # the row may already read running, which makes the transition a no-op
            await self._state.update_fields(Channel, channel_id, error_message=None)

            task = asyncio.create_task(self._run(handle, run), name=f"playout:{channel_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        log.info(
            "playout_started",
            channel_id=channel_id,
            generation=handle.generation,
            items=len(playlist),
            loop=run.loop,
            refresh_policy=self.refresh_policy.value,
        )
        return True

    async def stop(self, channel_id: str) -> bool:
        """Stop a running channel. The control loop exits without advancing."""
        async with self.registry.serialized(channel_id):
            if channel_id not in self.registry:
                log.info("playout_not_running", channel_id=channel_id, command="stop")
                return False

            await self.registry.terminate(channel_id)
            await self._state.record_transition(Channel, channel_id, ChannelStatus.STOPPED)

        log.info("playout_stopped", channel_id=channel_id)
        return True

    async def skip(self, channel_id: str) -> bool:
        """End the current item early; the loop advances exactly as on a clean finish."""
        async with self.registry.serialized(channel_id):
            if channel_id not in self.registry:
                log.info("playout_not_running", channel_id=channel_id, command="skip")
                return False

            if not self.registry.get(channel_id).running:
                log.info(
                    "playout_skip_ignored",
                    channel_id=channel_id,
                    reason="between items, next item not yet playing",
                )
                return False

            skipped = await self.registry.terminate(channel_id, keep_slot=True)

        log.info("playout_skip_requested", channel_id=channel_id, skipped=skipped)
        return skipped

    async def shutdown(self) -> list[str]:
        """Stop every owned channel, refuse further starts and wait for the control tasks."""
        self._closing = True
        channel_ids = self.registry.ids()
        await asyncio.gather(*(self.stop(channel_id) for channel_id in channel_ids))
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=self.registry.grace_period + 5)
        log.info("playout_shutdown_complete", channels=channel_ids)
        return channel_ids

    async def _run(self, handle: ProcessHandle, run: PlayoutRun) -> None:
        channel_id = run.channel_id
        try:
            while self.registry.is_current(handle):
                entry = run.current
                await self._state.update_fields(
                    Channel,
                    channel_id,
                    current_item_index=run.index,
                    current_position_seconds=0.0,
                )
                if not self.registry.is_current(handle):
                    break

                log.info(
                    "playout_item_started",
                    channel_id=channel_id,
                    index=run.index,
                    item_id=entry.item_id,
                    duration=entry.duration,
                )
                try:
                    process = await self.registry.spawn(
                        handle, build_playout_args(entry.source, run.output_url)
                    )
                except SpawnError as e:
                    log.error("playout_spawn_failed", channel_id=channel_id, error=str(e))
                    break
                if process is None:
                    break

                returncode = await process.wait()
                if not self.registry.is_current(handle):
                    break

                self._log_item_exit(handle, run, entry, returncode)
                if not await self._advance(run):
                    break
        finally:
            self._runs.pop(handle, None)
            if self.registry.release(handle):
                await self._state.record_transition(Channel, channel_id, ChannelStatus.STOPPED)
                log.info("playout_ended", channel_id=channel_id, generation=handle.generation)

    def _log_item_exit(
        self, handle: ProcessHandle, run: PlayoutRun, entry: PlaylistEntry, returncode: int
    ) -> None:
        if handle.intentional:
            log.info("playout_item_skipped", channel_id=run.channel_id, index=run.index)
        elif returncode in CLEAN_EXIT_CODES:
            log.info("playout_item_finished", channel_id=run.channel_id, index=run.index)
        else:
            error = ProcessExitError(run.channel_id, returncode, handle.last_stderr_line())
            log.warning(
                "playout_item_failed_skipping",
                channel_id=run.channel_id,
                index=run.index,
                item_id=entry.item_id,
                error=str(error),
            )

    async def _advance(self, run: PlayoutRun) -> bool:
        """Move to the next item. Returns False when the run is over."""
        run.index += 1

        if self.refresh_policy is PlaylistRefreshPolicy.EACH_ITEM:
            await self._refresh(run)
            if not run.playlist:
                return False

        if run.index < len(run.playlist):
            return True

        if not run.loop:
            log.info("playout_playlist_complete", channel_id=run.channel_id)
            return False

        if self.refresh_policy is PlaylistRefreshPolicy.WRAPAROUND:
            await self._refresh(run)
            if not run.playlist:
                return False

        run.index = 0
        log.info("playout_playlist_wrapped", channel_id=run.channel_id, items=len(run.playlist))
        return True

    async def _refresh(self, run: PlayoutRun) -> None:
        try:
            playlist = await self._state.load_playlist(run.channel_id)
        except PersistenceError as e:
            log.warning(
                "playout_refresh_failed_keeping_snapshot",
                channel_id=run.channel_id,
                error=str(e),
            )
            return

        if not playlist:
            log.warning("playout_playlist_emptied", channel_id=run.channel_id)
        run.playlist = playlist
