"""Shared pytest fixtures for async database and subprocess testing.

This module provides reusable fixtures for testing the orchestration
services against a real SQLite database (aiosqlite) and real child
processes. ffmpeg is never required: tests swap the argv builders for
`sys.executable -c <script>` (see tests/support/processes.py) so each
"media process" is a tiny Python program that sleeps, exits with a chosen
code, or writes to stderr.
"""

import uuid

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from streamcore.database import create_test_engine
from streamcore.models import (
    Base,
    Channel,
    ChannelStatus,
    Destination,
    DestinationStatus,
    PlaylistItem,
    Platform,
    SocialAccount,
    Stream,
    VodFile,
    VodStatus,
)
from streamcore.services.process_registry import ProcessRegistry
from streamcore.services.state_sync import StateSync
from streamcore.utils.encryption import EncryptionService


@pytest.fixture
def valid_fernet_key() -> str:
    """Generate a valid Fernet key for testing."""
    return Fernet.generate_key().decode()


@pytest.fixture
def encryption_env(valid_fernet_key: str, monkeypatch: pytest.MonkeyPatch):
    """Set FERNET_KEY and reset the EncryptionService singleton around the test."""
    EncryptionService.reset_instance()
    monkeypatch.setenv("FERNET_KEY", valid_fernet_key)
    yield valid_fernet_key
    EncryptionService.reset_instance()


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine with all tables.

    A file database (not :memory:) so concurrent sessions use separate
    connections, as they do against PostgreSQL.
    """
    engine, _ = create_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'streamcore.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def state_sync(session_factory) -> StateSync:
    return StateSync(session_factory, retry_attempts=2, retry_wait_max=0.2)


@pytest.fixture
def registry() -> ProcessRegistry:
    return ProcessRegistry(grace_period=2.0, name="test")


@pytest.fixture
def seed_channel(session_factory):
    """Factory creating a channel whose playlist items run the given scripts.

    Each script becomes a ready VodFile whose hls_path is the script itself,
    so a patched build_playout_args can run it with python_argv().
    """

    async def _seed(
        scripts: list[str],
        loop: bool = False,
        status: ChannelStatus = ChannelStatus.STOPPED,
    ) -> str:
        channel_id = str(uuid.uuid4())
        async with session_factory() as session:
            session.add(
                Channel(
                    id=channel_id,
                    name="Test Channel",
                    stream_key=f"ch-{channel_id[:8]}",
                    status=status,
                    loop_playlist=loop,
                )
            )
            await session.flush()
            for position, script in enumerate(scripts):
                vod_id = str(uuid.uuid4())
                session.add(
                    VodFile(
                        id=vod_id,
                        title=f"item {position}",
                        file_path=f"/storage/vod/{vod_id}.mp4",
                        hls_path=script,
                        duration_seconds=1.0,
                        status=VodStatus.READY,
                    )
                )
                await session.flush()
                session.add(PlaylistItem(channel_id=channel_id, vod_id=vod_id, position=position))
            await session.commit()
        return channel_id

    return _seed


@pytest.fixture
def add_playlist_item(session_factory):
    """Append one ready item to an existing channel's playlist."""

    async def _add(channel_id: str, script: str, position: int) -> None:
        vod_id = str(uuid.uuid4())
        async with session_factory() as session:
            session.add(
                VodFile(
                    id=vod_id,
                    file_path=f"/storage/vod/{vod_id}.mp4",
                    hls_path=script,
                    status=VodStatus.READY,
                )
            )
            await session.flush()
            session.add(PlaylistItem(channel_id=channel_id, vod_id=vod_id, position=position))
            await session.commit()

    return _add


@pytest.fixture
def seed_stream(session_factory):
    """Factory creating a stream with one destination per account label.

    Returns (stream_id, {label: destination_id}). Each label is stored as the
    account's platform_user_id so fake resolvers can tell accounts apart.
    """

    async def _seed(
        labels: list[str],
        inactive: tuple[str, ...] = (),
        status: DestinationStatus = DestinationStatus.STOPPED,
    ) -> tuple[str, dict[str, str]]:
        stream_id = str(uuid.uuid4())
        destinations = {}
        async with session_factory() as session:
            session.add(Stream(id=stream_id, stream_key=f"live-{stream_id[:8]}", title="Show"))
            await session.flush()
            for label in labels:
                account_id = str(uuid.uuid4())
                destination_id = str(uuid.uuid4())
                session.add(
                    SocialAccount(
                        id=account_id,
                        platform=Platform.CUSTOM,
                        platform_user_id=label,
                        is_active=label not in inactive,
                    )
                )
                await session.flush()
                session.add(
                    Destination(
                        id=destination_id,
                        stream_id=stream_id,
                        social_account_id=account_id,
                        status=status,
                    )
                )
                destinations[label] = destination_id
            await session.commit()
        return stream_id, destinations

    return _seed
