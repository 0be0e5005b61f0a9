"""Process Registry: the owned map of entity id → running media subprocess.

Every channel (playout) and destination (restream) runs at most one ffmpeg
process at a time. The registry is the only shared mutable structure in a
service; engines never keep their own process tables.

Slot Lifecycle:
    register(id)        → slot reserved, no process yet, fresh generation token
    spawn(handle, argv) → slot running
    terminate(id)       → SIGTERM, bounded wait, SIGKILL; slot removed
    release(handle)     → slot removed by its owner once the run is over

Start/Stop Races:
    A stop that arrives while a slot is reserved (credentials still resolving,
    exec in flight) marks the handle cancel-before-start. The eventual spawn()
    sees the mark and returns None, killing a process that raced the mark, so
    nothing leaks.

Generation Tokens:
    Each register() hands out a new monotonically increasing generation.
    release() and is_current() compare handles by identity, so an exit
    notification from a superseded run never touches the current slot.

Per-Key Ordering:
    serialized(id) is a FIFO asyncio.Lock per entity. Engines apply every
    command for one entity inside it, so commands for one entity are applied
    in delivery order while different entities proceed in parallel.

Usage:
    registry = ProcessRegistry(grace_period=10)
    async with registry.serialized(dest_id):
        handle = registry.register(dest_id)
    process = await registry.spawn(handle, argv, on_exit=on_exit)
"""

import asyncio
import itertools
import re
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from streamcore.config import get_terminate_grace_seconds
from streamcore.exceptions import SpawnError
from streamcore.utils.ffmpeg import sanitize_args
from streamcore.utils.logging import get_logger

log = get_logger(__name__)

STDERR_TAIL_LINES = 20
_LINE_SPLIT = re.compile(r"[\r\n]")


@dataclass(eq=False)
class ProcessHandle:
    """In-memory record of one run of one entity.

    Attributes:
        entity_id: Channel or destination id.
        generation: Token distinguishing this run from earlier/later runs.
        process: Current subprocess, None while the slot is only reserved
            or while the next process is being started.
        intentional: Set when the current process was terminated on request.
        cancelled: Set once terminate() removed the slot; later spawns are refused.
        stderr_tail: Last lines ffmpeg wrote to stderr.
    """

    entity_id: str
    generation: int
    process: asyncio.subprocess.Process | None = None
    intentional: bool = False
    cancelled: bool = False
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))

    @property
    def reserved(self) -> bool:
        """True while the slot exists but no process has been started yet."""
        return self.process is None and not self.cancelled

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def last_stderr_line(self) -> str | None:
        return self.stderr_tail[-1] if self.stderr_tail else None


ExitCallback = Callable[[ProcessHandle, int], Awaitable[None]]


class ProcessRegistry:
    """Owned, per-key synchronized table of media subprocesses.

    Args:
        grace_period: Seconds between SIGTERM and SIGKILL. Defaults to
            TERMINATE_GRACE_SECONDS.
        name: Label used in log events ("playout", "restream").
    """

    def __init__(self, grace_period: float | None = None, name: str = "registry") -> None:
        self.grace_period = (
            grace_period if grace_period is not None else get_terminate_grace_seconds()
        )
        self.name = name
        self._slots: dict[str, ProcessHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._generations = itertools.count(1)
        self._watchers: set[asyncio.Task] = set()

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def ids(self) -> list[str]:
        """Snapshot of registered entity ids."""
        return list(self._slots)

    def get(self, entity_id: str) -> ProcessHandle | None:
        return self._slots.get(entity_id)

    @asynccontextmanager
    async def serialized(self, entity_id: str) -> AsyncIterator[None]:
        """Hold the per-entity command lock (FIFO among waiters)."""
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._lock_users[entity_id] = self._lock_users.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[entity_id] -= 1
            if not self._lock_users[entity_id]:
                del self._lock_users[entity_id]
                self._locks.pop(entity_id, None)

    def register(self, entity_id: str) -> ProcessHandle | None:
        """Reserve the slot for `entity_id`.

        Returns:
            New handle with a fresh generation token, or None if the entity
            already has a slot (duplicate start is a no-op).
        """
        if entity_id in self._slots:
            log.info("registry_slot_already_present", registry=self.name, entity_id=entity_id)
            return None

        handle = ProcessHandle(entity_id=entity_id, generation=next(self._generations))
        self._slots[entity_id] = handle
        log.debug(
            "registry_slot_reserved",
            registry=self.name,
            entity_id=entity_id,
            generation=handle.generation,
        )
        return handle

    def take(self, entity_id: str) -> ProcessHandle | None:
        """Remove and return the slot for `entity_id` without signalling it."""
        return self._slots.pop(entity_id, None)

    def is_current(self, handle: ProcessHandle) -> bool:
        """True if `handle` still owns its entity's slot."""
        return self._slots.get(handle.entity_id) is handle

    def release(self, handle: ProcessHandle) -> bool:
        """Remove the slot if `handle` still owns it.

        Returns:
            False for a stale handle (superseded run or already terminated).
        """
        if not self.is_current(handle):
            return False
        del self._slots[handle.entity_id]
        log.debug(
            "registry_slot_released",
            registry=self.name,
            entity_id=handle.entity_id,
            generation=handle.generation,
        )
        return True

    async def spawn(
        self,
        handle: ProcessHandle,
        argv: list[str],
        on_exit: ExitCallback | None = None,
    ) -> asyncio.subprocess.Process | None:
        """Start `argv` as the process of a registered slot.

        Args:
            handle: Handle returned by register().
            argv: Command line, executable first.
            on_exit: Awaited with (handle, returncode) once the process exits.

        Returns:
            The started process, or None when the slot was cancelled before
            the process could start.

        Raises:
            SpawnError: If the executable is missing or the OS rejects it.
        """
        if handle.cancelled or not self.is_current(handle):
            log.info(
                "spawn_cancelled_before_start",
                registry=self.name,
                entity_id=handle.entity_id,
                generation=handle.generation,
            )
            return None

        handle.process = None
        handle.intentional = False
        handle.stderr_tail.clear()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error(
                "spawn_failed",
                registry=self.name,
                entity_id=handle.entity_id,
                command=argv[0],
                error=str(e),
            )
            raise SpawnError(handle.entity_id, argv[0], str(e)) from e

        handle.process = process
        log.info(
            "process_spawned",
            registry=self.name,
            entity_id=handle.entity_id,
            generation=handle.generation,
            pid=process.pid,
            args=sanitize_args(argv),
        )

        watcher = asyncio.create_task(self._watch(handle, process, on_exit))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        # A stop may have landed while the exec was in flight
        if handle.cancelled or not self.is_current(handle):
            log.info(
                "spawn_cancelled_during_exec",
                registry=self.name,
                entity_id=handle.entity_id,
                generation=handle.generation,
                pid=process.pid,
            )
            await self._stop_process(handle)
            return None

        return process

    async def terminate(self, entity_id: str, *, keep_slot: bool = False) -> bool:
        """Stop the entity's process: SIGTERM, bounded wait, then SIGKILL.

        Args:
            entity_id: Channel or destination id.
            keep_slot: Only end the current process and leave the slot in
                place (playout skip). Without it the slot is removed, and a
                reserved slot is marked cancel-before-start.

        Returns:
            True if a slot or process was acted on, False for a no-op.
        """
        handle = self._slots.get(entity_id)
        if handle is None:
            log.debug("terminate_not_registered", registry=self.name, entity_id=entity_id)
            return False

        if keep_slot:
            if not handle.running:
                return False
            await self._stop_process(handle)
            return True

        del self._slots[entity_id]
        handle.cancelled = True
        if handle.process is None:
            log.info(
                "slot_cancelled_before_start",
                registry=self.name,
                entity_id=entity_id,
                generation=handle.generation,
            )
            return True

        await self._stop_process(handle)
        return True

    async def terminate_all(self) -> list[str]:
        """Terminate every registered entity and wait for exit callbacks.

        Returns:
            Entity ids that were registered.
        """
        entity_ids = self.ids()
        await asyncio.gather(*(self.terminate(entity_id) for entity_id in entity_ids))
        if self._watchers:
            await asyncio.wait(set(self._watchers), timeout=self.grace_period)
        return entity_ids

    async def _stop_process(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return

        handle.intentional = True
        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            log.warning(
                "process_kill_after_grace",
                registry=self.name,
                entity_id=handle.entity_id,
                pid=process.pid,
                grace_period=self.grace_period,
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _watch(
        self,
        handle: ProcessHandle,
        process: asyncio.subprocess.Process,
        on_exit: ExitCallback | None,
    ) -> None:
        drain = asyncio.create_task(self._drain_stderr(handle, process))
        returncode = await process.wait()
        try:
            await asyncio.wait_for(drain, timeout=1.0)
        except asyncio.TimeoutError:
            log.debug("stderr_drain_timeout", registry=self.name, entity_id=handle.entity_id)

        log.info(
            "process_exited",
            registry=self.name,
            entity_id=handle.entity_id,
            generation=handle.generation,
            returncode=returncode,
            intentional=handle.intentional,
        )
        if on_exit is None:
            return
        try:
            await on_exit(handle, returncode)
        except Exception as e:
            log.error(
                "exit_callback_failed",
                registry=self.name,
                entity_id=handle.entity_id,
                generation=handle.generation,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def _drain_stderr(
        self, handle: ProcessHandle, process: asyncio.subprocess.Process
    ) -> None:
        if process.stderr is None:
            return
        # ffmpeg rewrites progress lines with \r, so split on both
        pending = ""
        while chunk := await process.stderr.read(4096):
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_SPLIT.split(pending)
            for line in lines:
                self._record_stderr(handle, line)
            pending = pending[-4096:]
        self._record_stderr(handle, pending)

    def _record_stderr(self, handle: ProcessHandle, line: str) -> None:
        line = line.strip()
        if not line:
            return
        handle.stderr_tail.append(line[:500])
        if "error" in line.lower():
            log.warning(
                "ffmpeg_stderr",
                registry=self.name,
                entity_id=handle.entity_id,
                generation=handle.generation,
                line=line[:300],
            )
