"""Tests for the Restream Fanout Engine.

Destinations are seeded with custom accounts whose platform_user_id is a
label ("a", "b", ...). A fake resolver turns each label into an ingest target
whose stream key is the label, and the patched build_restream_args runs the
fake media script registered for that label.
"""

import asyncio

import pytest
from sqlalchemy import update

from streamcore.exceptions import CredentialResolutionError
from streamcore.models import Destination, DestinationStatus, SocialAccount
from streamcore.services.credential_resolver import IngestTarget
from streamcore.services.restream_engine import RestreamEngine
from tests.support.processes import (
    SLEEP_FOREVER,
    exit_with,
    python_argv,
    wait_until,
    wait_until_async,
)


class FakeResolver:
    """Resolves accounts by label; labels in `failures` or `errors` raise."""

    def __init__(self, failures: dict[str, str] | None = None, delay: float = 0.0):
        self.failures = failures or {}
        self.errors: dict[str, Exception] = {}
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.resolved: list[str] = []

    async def resolve(self, account: SocialAccount) -> IngestTarget:
        label = account.platform_user_id
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if label in self.errors:
            raise self.errors[label]
        if label in self.failures:
            raise CredentialResolutionError(self.failures[label], platform="custom")
        self.resolved.append(label)
        return IngestTarget(rtmp_url="rtmp://ingest.example.test/app", stream_key=label)


@pytest.fixture
def scripts() -> dict[str, str]:
    """label → fake media script; unlisted labels run until stopped."""
    return {}


@pytest.fixture
def fake_restream_args(mocker, scripts):
    def _argv(source_url: str, destination_url: str) -> list[str]:
        label = destination_url.rsplit("/", 1)[-1]
        return python_argv(scripts.get(label, SLEEP_FOREVER))

    return mocker.patch(
        "streamcore.services.restream_engine.build_restream_args", side_effect=_argv
    )


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def engine(state_sync, registry, resolver, fake_restream_args) -> RestreamEngine:
    return RestreamEngine(state_sync, resolver, registry, credential_timeout=2.0)


async def destination_status(state_sync, destination_id: str) -> DestinationStatus:
    return (await state_sync.get_destination(destination_id)).status


async def has_status(state_sync, destination_id: str, status: DestinationStatus) -> bool:
    return await destination_status(state_sync, destination_id) is status


class TestStartStream:
    """Fan-out with per-destination failure isolation."""

    @pytest.mark.asyncio
    async def test_one_failing_destination_does_not_affect_siblings(
        self, engine, resolver, state_sync, seed_stream
    ):
        resolver.failures = {"b": "token expired"}
        stream_id, destinations = await seed_stream(["a", "b", "c"])

        outcome = await engine.start_stream(stream_id, "live-key")

        assert outcome == {
            destinations["a"]: True,
            destinations["b"]: False,
            destinations["c"]: True,
        }
        assert await destination_status(state_sync, destinations["a"]) is DestinationStatus.ACTIVE
        assert await destination_status(state_sync, destinations["c"]) is DestinationStatus.ACTIVE
        failed = await state_sync.get_destination(destinations["b"])
        assert failed.status is DestinationStatus.FAILED
        assert failed.error_message == "token expired"
        assert sorted(engine.active_destinations()) == sorted(
            [destinations["a"], destinations["c"]]
        )

        await engine.stop_stream(stream_id)

    @pytest.mark.asyncio
    async def test_active_destination_records_ingest_url(
        self, engine, state_sync, seed_stream, fake_restream_args, monkeypatch
    ):
        monkeypatch.setenv("SRS_RTMP_URL", "rtmp://srs.test:1935/live")
        stream_id, destinations = await seed_stream(["a"])

        await engine.start_stream(stream_id, "live-key")

        destination = await state_sync.get_destination(destinations["a"])
        assert destination.rtmp_url == "rtmp://ingest.example.test/app"
        assert destination.started_at is not None
        source_url, destination_url = fake_restream_args.call_args.args
        assert source_url == "rtmp://srs.test:1935/live/live-key"
        assert destination_url == "rtmp://ingest.example.test/app/a"

        await engine.stop_stream(stream_id)

    @pytest.mark.asyncio
    async def test_inactive_accounts_are_not_started(self, engine, resolver, seed_stream):
        stream_id, destinations = await seed_stream(["a", "b"], inactive=("b",))

        outcome = await engine.start_stream(stream_id, "live-key")

        assert outcome == {destinations["a"]: True}
        assert resolver.resolved == ["a"]

        await engine.stop_stream(stream_id)

    @pytest.mark.asyncio
    async def test_stop_stream_stops_live_destinations(self, engine, state_sync, seed_stream):
        stream_id, destinations = await seed_stream(["a", "b"])
        await engine.start_stream(stream_id, "live-key")
        processes = [engine.registry.get(d).process for d in destinations.values()]

        stopped = await engine.stop_stream(stream_id)

        assert sorted(stopped) == sorted(destinations.values())
        assert len(engine.registry) == 0
        assert all(p.returncode is not None for p in processes)
        for destination_id in destinations.values():
            destination = await state_sync.get_destination(destination_id)
            assert destination.status is DestinationStatus.STOPPED
            assert destination.ended_at is not None


class TestProcessExit:
    """Unplanned exits observed after a destination went active."""

    @pytest.mark.asyncio
    async def test_nonzero_exit_records_failed_with_stderr(
        self, engine, state_sync, seed_stream, scripts
    ):
        scripts["a"] = exit_with(1, "Connection refused")
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        await engine.start_destination(destination_id, "live-key")
        await wait_until_async(
            lambda: has_status(state_sync, destination_id, DestinationStatus.FAILED)
        )

        destination = await state_sync.get_destination(destination_id)
        assert destination.error_message == "ffmpeg exited with code 1: Connection refused"

    @pytest.mark.asyncio
    async def test_clean_exit_records_stopped(self, engine, state_sync, seed_stream, scripts):
        scripts["a"] = exit_with(255)
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        await engine.start_destination(destination_id, "live-key")
        await wait_until_async(
            lambda: has_status(state_sync, destination_id, DestinationStatus.STOPPED)
        )
        assert destination_id not in engine.registry

    @pytest.mark.asyncio
    async def test_stop_after_process_already_exited(
        self, engine, state_sync, seed_stream, scripts
    ):
        scripts["a"] = exit_with(1)
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]
        await engine.start_destination(destination_id, "live-key")
        await wait_until_async(
            lambda: has_status(state_sync, destination_id, DestinationStatus.FAILED)
        )

        assert await engine.stop_destination(destination_id) is False

        assert await destination_status(state_sync, destination_id) is DestinationStatus.STOPPED


class TestStartDestination:
    """Single-destination commands and start/stop races."""

    @pytest.mark.asyncio
    async def test_duplicate_start_is_noop(
        self, engine, seed_stream, fake_restream_args, state_sync
    ):
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        assert await engine.start_destination(destination_id, "live-key") is True
        assert await engine.start_destination(destination_id, "live-key") is False

        assert fake_restream_args.call_count == 1
        assert await destination_status(state_sync, destination_id) is DestinationStatus.ACTIVE
        await engine.stop_destination(destination_id)

    @pytest.mark.asyncio
    async def test_stop_during_credential_resolution(
        self, engine, resolver, state_sync, seed_stream, fake_restream_args
    ):
        resolver.gate = asyncio.Event()
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        start = asyncio.create_task(engine.start_destination(destination_id, "live-key"))
        await wait_until(lambda: destination_id in engine.registry)
        await engine.stop_destination(destination_id)
        resolver.gate.set()

        assert await start is False
        fake_restream_args.assert_not_called()
        assert len(engine.registry) == 0
        assert await destination_status(state_sync, destination_id) is DestinationStatus.STOPPED

    @pytest.mark.asyncio
    async def test_credential_timeout_fails_destination(
        self, state_sync, registry, fake_restream_args, seed_stream
    ):
        engine = RestreamEngine(
            state_sync, FakeResolver(delay=5.0), registry, credential_timeout=1.0
        )
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        assert await engine.start_destination(destination_id, "live-key") is False

        destination = await state_sync.get_destination(destination_id)
        assert destination.status is DestinationStatus.FAILED
        assert "timed out" in destination.error_message
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_spawn_error_fails_destination(self, engine, state_sync, seed_stream, mocker):
        mocker.patch(
            "streamcore.services.restream_engine.build_restream_args",
            return_value=["/nonexistent/ffmpeg"],
        )
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        assert await engine.start_destination(destination_id, "live-key") is False

        destination = await state_sync.get_destination(destination_id)
        assert destination.status is DestinationStatus.FAILED
        assert destination.error_message.startswith("Failed to start /nonexistent/ffmpeg")

    @pytest.mark.asyncio
    async def test_restart_after_failure(self, engine, resolver, state_sync, seed_stream):
        resolver.failures = {"a": "token expired"}
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]
        await engine.start_destination(destination_id, "live-key")
        assert await destination_status(state_sync, destination_id) is DestinationStatus.FAILED

        resolver.failures = {}
        assert await engine.start_destination(destination_id, "live-key") is True

        destination = await state_sync.get_destination(destination_id)
        assert destination.status is DestinationStatus.ACTIVE
        assert destination.error_message is None
        await engine.shutdown()
        assert await destination_status(state_sync, destination_id) is DestinationStatus.STOPPED

    @pytest.mark.asyncio
    async def test_unexpected_resolver_error_fails_destination(
        self, engine, resolver, state_sync, seed_stream
    ):
        resolver.errors = {"a": ValueError("Expecting value: line 1 column 1")}
        _, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]

        assert await engine.start_destination(destination_id, "live-key") is False

        destination = await state_sync.get_destination(destination_id)
        assert destination.status is DestinationStatus.FAILED
        assert destination.error_message == "Credential resolution failed: ValueError"
        assert destination_id not in engine.registry

        resolver.errors = {}
        assert await engine.start_destination(destination_id, "live-key") is True
        await engine.stop_destination(destination_id)


class TestOwnership:
    """The engine acts on its injected registry and on what it owns."""

    def test_uses_injected_registry(self, engine, registry, state_sync, resolver):
        assert engine.registry is registry
        assert engine.registry.grace_period == 2.0
        untimed = RestreamEngine(state_sync, resolver, registry, credential_timeout=0)
        assert untimed.credential_timeout == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("via_stream", [True, False])
    async def test_stop_stream_stops_owned_destination_not_live_in_store(
        self, engine, seed_stream, session_factory, via_stream
    ):
        stream_id, destinations = await seed_stream(["a"])
        destination_id = destinations["a"]
        if via_stream:
            await engine.start_stream(stream_id, "live-key")
        else:
            await engine.start_destination(destination_id, "live-key")
        process = engine.registry.get(destination_id).process
        # as if the active write had been lost
        async with session_factory() as session:
            await session.execute(
                update(Destination)
                .where(Destination.id == destination_id)
                .values(status=DestinationStatus.STOPPED)
            )
            await session.commit()

        stopped = await engine.stop_stream(stream_id)

        assert stopped == [destination_id]
        assert process.returncode is not None
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_no_start_after_shutdown(
        self, engine, resolver, seed_stream, fake_restream_args
    ):
        stream_id, destinations = await seed_stream(["a"])

        await engine.shutdown()

        assert await engine.start_stream(stream_id, "live-key") == {destinations["a"]: False}
        assert await engine.start_destination(destinations["a"], "live-key") is False
        assert resolver.resolved == []
        fake_restream_args.assert_not_called()
        assert len(engine.registry) == 0
