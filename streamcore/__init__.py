"""Streamcore media-job orchestration layer.

This package contains the orchestration core shared by the restream fan-out
engine and the linear playout scheduler. Both consume control events from
PgQueuer, own ffmpeg subprocesses through a Process Registry, and write
authoritative status into PostgreSQL.
"""

from streamcore.models import Base, Channel, Destination

__all__ = [
    "Base",
    "Channel",
    "Destination",
]
