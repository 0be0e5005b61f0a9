"""Pydantic schemas for validation and serialization."""

from streamcore.schemas.events import (
    EVENT_MODELS,
    ControlEvent,
    PlayoutSkipEvent,
    PlayoutStartEvent,
    PlayoutStopEvent,
    RestreamStartEvent,
    RestreamStopEvent,
    StreamStartEvent,
    StreamStopEvent,
)

__all__ = [
    "EVENT_MODELS",
    "ControlEvent",
    "PlayoutSkipEvent",
    "PlayoutStartEvent",
    "PlayoutStopEvent",
    "RestreamStartEvent",
    "RestreamStopEvent",
    "StreamStartEvent",
    "StreamStopEvent",
]
