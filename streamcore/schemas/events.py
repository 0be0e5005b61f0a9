"""Control event payload schemas.

Defines Pydantic models for validating bus payloads. Publishers (the
management API, the ingest callbacks) send camelCase JSON; models accept both
the camelCase alias and the snake_case field name.

Topics:
- stream:start / stream:stop: fan a live stream out to its destinations
- restream:start / restream:stop: control one destination
- playout:start / playout:stop / playout:skip: control one linear channel
"""

import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

STREAM_START = "stream:start"
STREAM_STOP = "stream:stop"
RESTREAM_START = "restream:start"
RESTREAM_STOP = "restream:stop"
PLAYOUT_START = "playout:start"
PLAYOUT_STOP = "playout:stop"
PLAYOUT_SKIP = "playout:skip"


def canonical_uuid(value: str | None) -> str | None:
    """Normalise an id to the dashed UUID form (ValueError if it is not one)."""
    if value is None:
        return None
    return str(uuid.UUID(str(value)))


class ControlEvent(BaseModel):
    """Base for all control events (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class StreamStartEvent(ControlEvent):
    """A live stream started publishing; fan out to its destinations."""

    stream_id: str
    stream_key: str = Field(..., min_length=1, max_length=64)
    user_id: str | None = None

    @field_validator("stream_id")
    @classmethod
    def validate_stream_id(cls, value: str) -> str:
        return canonical_uuid(value)


class StreamStopEvent(ControlEvent):
    stream_id: str
    stream_key: str | None = None

    @field_validator("stream_id")
    @classmethod
    def validate_stream_id(cls, value: str) -> str:
        return canonical_uuid(value)


class RestreamStartEvent(ControlEvent):
    """Start one destination of a live stream."""

    destination_id: str
    stream_key: str = Field(..., min_length=1, max_length=64)
    social_account_id: str | None = None
    platform: str | None = None

    @field_validator("destination_id", "social_account_id")
    @classmethod
    def validate_ids(cls, value: str | None) -> str | None:
        return canonical_uuid(value)


class RestreamStopEvent(ControlEvent):
    destination_id: str

    @field_validator("destination_id")
    @classmethod
    def validate_destination_id(cls, value: str) -> str:
        return canonical_uuid(value)


class ChannelEvent(ControlEvent):
    channel_id: str

    @field_validator("channel_id")
    @classmethod
    def validate_channel_id(cls, value: str) -> str:
        return canonical_uuid(value)


class PlayoutStartEvent(ChannelEvent):
    """Start a linear channel.

    stream_key and loop fall back to the channel's stored values when omitted.
    """

    stream_key: str | None = Field(default=None, min_length=1, max_length=64)
    loop: bool | None = None


class PlayoutStopEvent(ChannelEvent):
    pass


class PlayoutSkipEvent(ChannelEvent):
    pass


EVENT_MODELS: dict[str, type[ControlEvent]] = {
    STREAM_START: StreamStartEvent,
    STREAM_STOP: StreamStopEvent,
    RESTREAM_START: RestreamStartEvent,
    RESTREAM_STOP: RestreamStopEvent,
    PLAYOUT_START: PlayoutStartEvent,
    PLAYOUT_STOP: PlayoutStopEvent,
    PLAYOUT_SKIP: PlayoutSkipEvent,
}
