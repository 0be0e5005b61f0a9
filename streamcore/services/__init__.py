"""Orchestration services: registry, state sync, resolver and the two engines."""

from streamcore.services.credential_resolver import (
    CredentialResolver,
    IngestTarget,
    PlatformCredentialResolver,
)
from streamcore.services.playout_scheduler import PlayoutScheduler
from streamcore.services.process_registry import ProcessHandle, ProcessRegistry
from streamcore.services.restream_engine import RestreamEngine
from streamcore.services.state_sync import DestinationTarget, PlaylistEntry, StateSync

__all__ = [
    "CredentialResolver",
    "DestinationTarget",
    "IngestTarget",
    "PlatformCredentialResolver",
    "PlayoutScheduler",
    "PlaylistEntry",
    "ProcessHandle",
    "ProcessRegistry",
    "RestreamEngine",
    "StateSync",
]
