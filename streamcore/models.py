"""SQLAlchemy 2.0 ORM models.

This module contains the SQLAlchemy models the orchestration services read
and write. All models use the Mapped[type] annotation pattern required by
SQLAlchemy 2.0. Table and column names follow the shared platform schema, so
the management API and these services see the same rows.

Ownership:
    Channel: status/current_item_index written only by the playout service.
    Destination: status/rtmp_url/error_message written only by the restream service.
    Stream, SocialAccount, VodFile, PlaylistItem: read-only here.

Encrypted Fields Pattern:
    SocialAccount.access_token_encrypted holds a Fernet token (LargeBinary).
    NEVER expose encrypted fields in __repr__ or log statements.

Status Columns:
    Stored as VARCHAR (native_enum=False) with the lowercase enum values, so
    the same model works on PostgreSQL and on SQLite in tests.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from streamcore.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _status_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        name=name,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class ChannelStatus(enum.Enum):
    """Linear channel run state."""

    STOPPED = "stopped"
    RUNNING = "running"


class DestinationStatus(enum.Enum):
    """Restream destination lifecycle.

    One run progresses pending → active → {stopped | failed}. A new run
    re-enters pending from stopped or failed.
    """

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    STOPPED = "stopped"


class VodStatus(enum.Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class Platform(enum.Enum):
    """Social platforms a destination can push to."""

    FACEBOOK = "facebook"
    YOUTUBE = "youtube"
    TWITCH = "twitch"
    CUSTOM = "custom"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class StatusTransitionMixin:
    """Enforces VALID_TRANSITIONS on every assignment to `status`.

    Assigning the current status is a no-op, so duplicate deliveries of the
    same command never raise.
    """

    VALID_TRANSITIONS: dict = {}

    @validates("status")
    def validate_status_change(self, key, value):
        current = self.status
        # Skip validation on initial creation and on idempotent re-assignment
        if current is None or current == value:
            return value

        if value not in self.VALID_TRANSITIONS.get(current, []):
            raise InvalidStateTransitionError(
                f"Invalid transition: {current.value} → {value.value}",
                from_status=current,
                to_status=value,
            )
        return value


class Stream(Base):
    """Live source published to the ingest server under `stream_key`."""

    __tablename__ = "streams"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    stream_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="offline")

    destinations: Mapped[list["Destination"]] = relationship(back_populates="stream")

    def __repr__(self) -> str:
        return f"<Stream(id={self.id!s:.8}, status={self.status!r})>"


class SocialAccount(Base):
    """Stored platform account a destination pushes to.

    Attributes:
        platform: Target platform.
        platform_user_id: Broadcaster id (Twitch) or channel id (YouTube).
        page_id: Facebook page id; None means the user's own timeline.
        access_token_encrypted: Fernet-encrypted OAuth access token. For
            `custom` accounts it holds a JSON object {"rtmpUrl", "streamKey"}.
        is_active: Destinations of inactive accounts are not started.
    """

    __tablename__ = "social_accounts"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    platform: Mapped[Platform] = mapped_column(_status_enum(Platform, "platform"), nullable=False)
    platform_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    page_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<SocialAccount(id={self.id!s:.8}, platform={self.platform.value!r})>"


class Destination(StatusTransitionMixin, Base):
    """Restream target of one stream on one social account.

    Mutated exclusively by the restream service.
    """

    __tablename__ = "restream_destinations"

    VALID_TRANSITIONS = {
        DestinationStatus.PENDING: [
            DestinationStatus.ACTIVE,
            DestinationStatus.FAILED,
            DestinationStatus.STOPPED,
        ],
        DestinationStatus.ACTIVE: [DestinationStatus.STOPPED, DestinationStatus.FAILED],
        DestinationStatus.FAILED: [DestinationStatus.PENDING, DestinationStatus.STOPPED],
        DestinationStatus.STOPPED: [DestinationStatus.PENDING],
    }

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    stream_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("streams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    social_account_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("social_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[DestinationStatus] = mapped_column(
        _status_enum(DestinationStatus, "destinationstatus"),
        nullable=False,
        default=DestinationStatus.PENDING,
        index=True,
    )
    rtmp_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    stream: Mapped["Stream"] = relationship(back_populates="destinations")
    social_account: Mapped["SocialAccount"] = relationship()

    def __repr__(self) -> str:
        return f"<Destination(id={self.id!s:.8}, status={self.status.value!r})>"


class VodFile(Base):
    """Uploaded media transcoded to HLS by the transcoder service."""

    __tablename__ = "vod_files"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    hls_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[VodStatus] = mapped_column(
        _status_enum(VodStatus, "vodstatus"), nullable=False, default=VodStatus.PROCESSING
    )


class Channel(StatusTransitionMixin, Base):
    """Linear (24/7 playout) channel.

    Attributes:
        stream_key: Key the channel publishes under on the linear ingest app.
        status: stopped or running. Written only by the playout service.
        loop_playlist: Restart from the first item after the last one.
        current_item_index: Index into the running snapshot of the item
            most recently started (written before the item plays).
        current_position_seconds: Offset into the current item.
        error_message: Note left by reconciliation after an unclean shutdown.
    """

    __tablename__ = "linear_channels"

    VALID_TRANSITIONS = {
        ChannelStatus.STOPPED: [ChannelStatus.RUNNING],
        ChannelStatus.RUNNING: [ChannelStatus.STOPPED],
    }

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    stream_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[ChannelStatus] = mapped_column(
        _status_enum(ChannelStatus, "channelstatus"),
        nullable=False,
        default=ChannelStatus.STOPPED,
        index=True,
    )
    loop_playlist: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    current_item_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_position_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[list["PlaylistItem"]] = relationship(
        back_populates="channel", order_by="PlaylistItem.position"
    )

    def __repr__(self) -> str:
        return (
            f"<Channel(id={self.id!s:.8}, status={self.status.value!r}, "
            f"index={self.current_item_index})>"
        )


class PlaylistItem(Base):
    """One entry of a channel's ordered playlist."""

    __tablename__ = "playlist_items"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("linear_channels.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vod_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("vod_files.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    channel: Mapped["Channel"] = relationship(back_populates="items")
    vod: Mapped["VodFile"] = relationship()

    __table_args__ = (UniqueConstraint("channel_id", "position", name="uq_playlist_position"),)
