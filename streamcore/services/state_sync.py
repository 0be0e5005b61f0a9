"""State Sync: the persistence boundary of the orchestration services.

Every read and write is one short transaction on one entity (the short
transaction pattern: open → read/write → commit → close). Nothing here holds
a session across a subprocess lifetime.

Write Policy:
    - record_transition() is called before spawning (pending/running/active)
      and after exit (stopped/failed), so durable state and the in-memory
      Process Registry diverge for at most one subprocess lifetime.
    - Transient store errors (SQLAlchemyError, OSError) are retried with
      bounded exponential backoff via tenacity.
    - A write that still fails is logged and reported as False. It is never
      raised: a failed status write must not abort an orchestration loop.
    - Status transitions are validated by the models; an invalid transition
      (e.g. a late "active" after "stopped") is logged and skipped.
    - Re-recording the status a row already has is a no-op.

Read Policy:
    Reads retry the same way; a read that still fails raises PersistenceError
    so the caller can decide (keep the old snapshot, ignore the command).

Reconciliation:
    After a restart the Process Registry is empty, so any row still marked
    running/active/pending was not observed to exit. reconcile_channels() and
    reconcile_destinations() mark such rows stopped with an explanatory note.
"""

from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from streamcore.config import get_hls_root, get_persist_retry_attempts
from streamcore.exceptions import InvalidStateTransitionError, PersistenceError
from streamcore.models import (
    Base,
    Channel,
    ChannelStatus,
    Destination,
    DestinationStatus,
    PlaylistItem,
    SocialAccount,
    VodFile,
    VodStatus,
    utcnow,
)
from streamcore.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (SQLAlchemyError, OSError)

UNCLEAN_EXIT_NOTE = "Not observed to exit cleanly before service restart"

LIVE_DESTINATION_STATUSES = (DestinationStatus.PENDING, DestinationStatus.ACTIVE)


@dataclass(frozen=True)
class PlaylistEntry:
    """One item of a playlist snapshot taken by the playout scheduler.

    Attributes:
        item_id: playlist_items.id
        vod_id: vod_files.id
        source: Media reference ffmpeg reads (HLS master playlist).
        duration: Item duration in seconds, if known.
        position: Position within the channel (unique per channel).
    """

    item_id: str
    vod_id: str
    source: str
    duration: float | None
    position: int


@dataclass(frozen=True)
class DestinationTarget:
    """Enabled destination of a stream, as needed to start it."""

    destination_id: str
    stream_id: str
    social_account_id: str
    platform: str
    status: DestinationStatus


class StateSync:
    """Transactional single-entity reads and writes with bounded retry.

    Args:
        session_factory: async_sessionmaker producing AsyncSession objects.
        retry_attempts: Attempts per operation (default PERSIST_RETRY_ATTEMPTS).
        retry_wait_max: Cap on the exponential backoff between attempts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_attempts: int | None = None,
        retry_wait_max: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._retry_attempts = max(
            1, retry_attempts if retry_attempts is not None else get_persist_retry_attempts()
        )
        self._retry_wait_max = retry_wait_max

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=self._retry_wait_max),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=lambda retry_state: log.warning(
                "store_operation_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self._session_factory() as session:
                        result = await fn(session)
                        await session.commit()
                        return result
        except RETRYABLE_ERRORS as e:
            raise PersistenceError(operation, e) from e
        raise PersistenceError(operation)  # pragma: no cover

    async def record_transition(
        self,
        model: type[Base],
        entity_id: str,
        status: ChannelStatus | DestinationStatus,
        **fields: Any,
    ) -> bool:
        """Move one row to `status` and update `fields` in the same transaction.

        Args:
            model: Channel or Destination.
            entity_id: Primary key.
            status: Target status.
            **fields: Extra columns to set when the status changes.

        Returns:
            True if the row now has `status`; False if the row is missing,
            the transition is invalid, or the store kept failing.
        """

        async def _apply(session: AsyncSession) -> bool:
            row = await session.get(model, entity_id)
            if row is None:
                return False
            if row.status == status:
                return True
            row.status = status
            for name, value in fields.items():
                setattr(row, name, value)
            return True

        try:
            applied = await self._run(f"record_transition:{model.__tablename__}", _apply)
        except InvalidStateTransitionError as e:
            log.warning(
                "state_transition_rejected",
                table=model.__tablename__,
                entity_id=entity_id,
                from_status=e.from_status.value,
                to_status=e.to_status.value,
            )
            return False
        except PersistenceError as e:
            log.error(
                "state_write_failed",
                table=model.__tablename__,
                entity_id=entity_id,
                status=status.value,
                error=str(e),
            )
            return False

        if not applied:
            log.warning("state_row_missing", table=model.__tablename__, entity_id=entity_id)
            return False

        log.info(
            "state_transition_recorded",
            table=model.__tablename__,
            entity_id=entity_id,
            status=status.value,
        )
        return True

    async def update_fields(self, model: type[Base], entity_id: str, **fields: Any) -> bool:
        """Update non-status columns of one row. Never raises."""

        async def _apply(session: AsyncSession) -> bool:
            row = await session.get(model, entity_id)
            if row is None:
                return False
            for name, value in fields.items():
                setattr(row, name, value)
            return True

        try:
            return await self._run(f"update_fields:{model.__tablename__}", _apply)
        except PersistenceError as e:
            log.error(
                "state_write_failed",
                table=model.__tablename__,
                entity_id=entity_id,
                fields=sorted(fields),
                error=str(e),
            )
            return False

    async def get_channel(self, channel_id: str) -> Channel | None:
        async def _read(session: AsyncSession) -> Channel | None:
            return await session.get(Channel, channel_id)

        return await self._run("get_channel", _read)

    async def load_playlist(self, channel_id: str) -> list[PlaylistEntry]:
        """Take a snapshot of a channel's playable items, ordered by position.

        Only items whose VOD finished transcoding (status ready) are included.
        """
        hls_root = get_hls_root().rstrip("/")

        async def _read(session: AsyncSession) -> list[PlaylistEntry]:
            result = await session.execute(
                select(PlaylistItem, VodFile)
                .join(VodFile, PlaylistItem.vod_id == VodFile.id)
                .where(PlaylistItem.channel_id == channel_id)
                .where(VodFile.status == VodStatus.READY)
                .order_by(PlaylistItem.position)
            )
            return [
                PlaylistEntry(
                    item_id=item.id,
                    vod_id=vod.id,
                    source=vod.hls_path or f"{hls_root}/{vod.id}/master.m3u8",
                    duration=vod.duration_seconds,
                    position=item.position,
                )
                for item, vod in result.all()
            ]

        return await self._run("load_playlist", _read)

    async def get_destination(self, destination_id: str) -> Destination | None:
        async def _read(session: AsyncSession) -> Destination | None:
            return await session.get(Destination, destination_id)

        return await self._run("get_destination", _read)

    async def get_account(self, account_id: str) -> SocialAccount | None:
        async def _read(session: AsyncSession) -> SocialAccount | None:
            return await session.get(SocialAccount, account_id)

        return await self._run("get_account", _read)

    async def list_enabled_destinations(self, stream_id: str) -> list[DestinationTarget]:
        """Destinations of a stream whose social account is active."""

        async def _read(session: AsyncSession) -> list[DestinationTarget]:
            result = await session.execute(
                select(Destination, SocialAccount)
                .join(SocialAccount, Destination.social_account_id == SocialAccount.id)
                .where(Destination.stream_id == stream_id)
                .where(SocialAccount.is_active.is_(True))
            )
            return [
                DestinationTarget(
                    destination_id=destination.id,
                    stream_id=destination.stream_id,
                    social_account_id=account.id,
                    platform=account.platform.value,
                    status=destination.status,
                )
                for destination, account in result.all()
            ]

        return await self._run("list_enabled_destinations", _read)

    async def list_live_destinations(self, stream_id: str) -> list[str]:
        """Ids of a stream's destinations that are pending or active."""

        async def _read(session: AsyncSession) -> list[str]:
            result = await session.execute(
                select(Destination.id)
                .where(Destination.stream_id == stream_id)
                .where(Destination.status.in_(LIVE_DESTINATION_STATUSES))
            )
            return list(result.scalars().all())

        return await self._run("list_live_destinations", _read)

    async def reconcile_channels(self, exclude: Collection[str] = ()) -> list[str]:
        """Mark channels stuck in running as stopped.

        Args:
            exclude: Channel ids that really are running in this process.

        Returns:
            Ids of the channels that were reconciled.
        """

        async def _sweep(session: AsyncSession) -> list[str]:
            result = await session.execute(
                select(Channel).where(Channel.status == ChannelStatus.RUNNING)
            )
            swept = []
            for channel in result.scalars().all():
                if channel.id in exclude:
                    continue
                channel.status = ChannelStatus.STOPPED
                channel.error_message = UNCLEAN_EXIT_NOTE
                swept.append(channel.id)
            return swept

        swept = await self._run("reconcile_channels", _sweep)
        if swept:
            log.warning("channels_reconciled", count=len(swept), channel_ids=swept)
        return swept

    async def reconcile_destinations(self, exclude: Collection[str] = ()) -> list[str]:
        """Mark destinations stuck in pending/active as stopped.

        Returns:
            Ids of the destinations that were reconciled.
        """

        async def _sweep(session: AsyncSession) -> list[str]:
            result = await session.execute(
                select(Destination).where(Destination.status.in_(LIVE_DESTINATION_STATUSES))
            )
            swept = []
            now = utcnow()
            for destination in result.scalars().all():
                if destination.id in exclude:
                    continue
                destination.status = DestinationStatus.STOPPED
                destination.error_message = UNCLEAN_EXIT_NOTE
                destination.ended_at = now
                swept.append(destination.id)
            return swept

        swept = await self._run("reconcile_destinations", _sweep)
        if swept:
            log.warning("destinations_reconciled", count=len(swept), destination_ids=swept)
        return swept
