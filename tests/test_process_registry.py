"""Tests for the Process Registry.

Covers slot reservation, spawn/terminate with SIGTERM → SIGKILL escalation,
cancel-before-start, generation tokens, skip-style terminate (keep_slot),
exit callbacks and per-key command ordering.
"""

import asyncio

import pytest

from streamcore.exceptions import SpawnError
from streamcore.services.process_registry import ProcessRegistry
from tests.support.processes import (
    IGNORE_SIGTERM,
    SLEEP_FOREVER,
    exit_with,
    python_argv,
    wait_until,
)


class TestSlots:
    """Slot reservation and ownership."""

    def test_register_returns_fresh_generations(self, registry: ProcessRegistry):
        first = registry.register("a")
        second = registry.register("b")

        assert first.generation < second.generation
        assert "a" in registry and "b" in registry
        assert len(registry) == 2
        assert first.reserved

    def test_duplicate_register_is_noop(self, registry: ProcessRegistry):
        handle = registry.register("a")

        assert registry.register("a") is None
        assert registry.get("a") is handle

    def test_release_ignores_stale_handle(self, registry: ProcessRegistry):
        old = registry.register("a")
        registry.take("a")
        new = registry.register("a")

        assert registry.release(old) is False
        assert registry.is_current(new)
        assert registry.release(new) is True
        assert "a" not in registry

    @pytest.mark.asyncio
    async def test_terminate_unknown_id_is_noop(self, registry: ProcessRegistry):
        assert await registry.terminate("missing") is False


class TestSpawnAndTerminate:
    """Subprocess lifecycle."""

    @pytest.mark.asyncio
    async def test_terminate_sends_sigterm_and_removes_slot(self, registry: ProcessRegistry):
        handle = registry.register("a")
        process = await registry.spawn(handle, python_argv(SLEEP_FOREVER))

        assert handle.running
        assert await registry.terminate("a") is True

        assert process.returncode is not None
        assert handle.intentional is True
        assert "a" not in registry

    @pytest.mark.asyncio
    async def test_kill_after_grace_period(self):
        registry = ProcessRegistry(grace_period=0.3, name="test")
        handle = registry.register("a")
        process = await registry.spawn(handle, python_argv(IGNORE_SIGTERM))
        await wait_until(lambda: "ready" in handle.stderr_tail)

        await registry.terminate("a")

        assert process.returncode == -9

    @pytest.mark.asyncio
    async def test_spawn_missing_executable_raises(self, registry: ProcessRegistry):
        handle = registry.register("a")

        with pytest.raises(SpawnError) as exc_info:
            await registry.spawn(handle, ["/nonexistent/ffmpeg", "-version"])

        assert exc_info.value.entity_id == "a"
        assert exc_info.value.command == "/nonexistent/ffmpeg"

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, registry: ProcessRegistry):
        handle = registry.register("a")

        assert await registry.terminate("a") is True
        assert handle.cancelled is True
        assert "a" not in registry

        process = await registry.spawn(handle, python_argv(SLEEP_FOREVER))
        assert process is None
        assert handle.process is None

    @pytest.mark.asyncio
    async def test_terminate_during_respawn_stops_new_process(self, registry: ProcessRegistry):
        handle = registry.register("a")
        first = await registry.spawn(handle, python_argv(exit_with(0)))
        await first.wait()

        respawn = asyncio.create_task(registry.spawn(handle, python_argv(SLEEP_FOREVER)))
        await asyncio.sleep(0)
        assert await registry.terminate("a") is True

        assert await respawn is None
        assert handle.cancelled is True
        assert handle.process is not first
        assert handle.process.returncode is not None
        assert "a" not in registry

    @pytest.mark.asyncio
    async def test_keep_slot_ends_process_only(self, registry: ProcessRegistry):
        handle = registry.register("a")
        process = await registry.spawn(handle, python_argv(SLEEP_FOREVER))

        assert await registry.terminate("a", keep_slot=True) is True

        assert process.returncode is not None
        assert registry.is_current(handle)
        assert handle.intentional is True

    @pytest.mark.asyncio
    async def test_keep_slot_on_reserved_slot_is_noop(self, registry: ProcessRegistry):
        handle = registry.register("a")

        assert await registry.terminate("a", keep_slot=True) is False
        assert handle.cancelled is False
        assert registry.is_current(handle)

    @pytest.mark.asyncio
    async def test_terminate_all(self, registry: ProcessRegistry):
        processes = []
        for entity_id in ("a", "b", "c"):
            handle = registry.register(entity_id)
            processes.append(await registry.spawn(handle, python_argv(SLEEP_FOREVER)))

        stopped = await registry.terminate_all()

        assert sorted(stopped) == ["a", "b", "c"]
        assert len(registry) == 0
        assert all(p.returncode is not None for p in processes)


class TestExitObservation:
    """Exit callbacks and stderr capture."""

    @pytest.mark.asyncio
    async def test_on_exit_receives_returncode_and_stderr(self, registry: ProcessRegistry):
        exits = []

        async def on_exit(handle, returncode):
            exits.append((handle.entity_id, returncode, handle.last_stderr_line()))

        handle = registry.register("a")
        await registry.spawn(
            handle, python_argv(exit_with(3, "Connection refused")), on_exit=on_exit
        )
        await wait_until(lambda: exits)

        assert exits == [("a", 3, "Connection refused")]
        assert handle.intentional is False

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self, registry: ProcessRegistry):
        calls = []

        async def on_exit(handle, returncode):
            calls.append(returncode)
            raise RuntimeError("boom")

        handle = registry.register("a")
        await registry.spawn(handle, python_argv(exit_with(0)), on_exit=on_exit)
        await wait_until(lambda: calls)
        await asyncio.sleep(0.05)

        assert calls == [0]
        assert not registry._watchers


class TestSerialized:
    """Per-key command ordering."""

    @pytest.mark.asyncio
    async def test_commands_for_one_key_run_in_order(self, registry: ProcessRegistry):
        order = []

        async def command(name: str, delay: float) -> None:
            async with registry.serialized("a"):
                order.append(f"{name}:begin")
                await asyncio.sleep(delay)
                order.append(f"{name}:end")

        first = asyncio.create_task(command("start", 0.1))
        await asyncio.sleep(0)
        second = asyncio.create_task(command("stop", 0))
        await asyncio.gather(first, second)

        assert order == ["start:begin", "start:end", "stop:begin", "stop:end"]
        assert not registry._locks

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self, registry: ProcessRegistry):
        order = []

        async def command(key: str, delay: float) -> None:
            async with registry.serialized(key):
                order.append(f"{key}:begin")
                await asyncio.sleep(delay)
                order.append(f"{key}:end")

        await asyncio.gather(command("a", 0.1), command("b", 0))

        assert order.index("b:end") < order.index("a:end")
