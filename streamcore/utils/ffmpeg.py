"""ffmpeg command construction for playout and restream processes.

This module builds the argv lists handed to the Process Registry and
sanitizes them for logging. Workers never build ffmpeg commands inline.

Critical Pattern:
- Stream keys are credentials: NEVER log an argv without sanitize_args()
- Exit codes 0 and 255 both mean ffmpeg stopped on request (255 = caught SIGTERM)

Usage:
    from streamcore.utils.ffmpeg import build_restream_args, sanitize_args

    argv = build_restream_args("rtmp://srs:1935/live/abc", "rtmp://a.rtmp.youtube.com/live2/key")
    log.info("restream_command", args=sanitize_args(argv))
"""

from urllib.parse import urlsplit, urlunsplit

from streamcore.config import get_ffmpeg_path

# ffmpeg exits 255 when it handles SIGTERM/SIGINT itself
CLEAN_EXIT_CODES = frozenset({0, 255})

_URL_SCHEMES = ("rtmp://", "rtmps://", "srt://", "http://", "https://")


def build_playout_args(input_path: str, output_url: str) -> list[str]:
    """Build ffmpeg argv that plays one item at native rate to an RTMP target.

    Args:
        input_path: HLS master playlist (or file) of the item.
        output_url: Full RTMP URL including the channel stream key.

    Returns:
        argv list, executable first.
    """
    return [
        get_ffmpeg_path(),
        "-hide_banner",
        "-nostdin",
        "-re",
        "-i", input_path,
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-b:v", "4500k",
        "-maxrate", "4500k",
        "-bufsize", "9000k",
        "-c:a", "aac",
        "-b:a", "128k",
        "-ar", "44100",
        "-f", "flv",
        "-flvflags", "no_duration_filesize",
        output_url,
    ]


def build_restream_args(source_url: str, destination_url: str) -> list[str]:
    """Build ffmpeg argv that remuxes a live source to a platform ingest.

    Video is copied untouched; audio is normalized to AAC so every platform
    accepts it.
    """
    return [
        get_ffmpeg_path(),
        "-hide_banner",
        "-nostdin",
        "-i", source_url,
        "-c:v", "copy",
        "-c:a", "aac",
        "-b:a", "128k",
        "-f", "flv",
        "-flvflags", "no_duration_filesize",
        destination_url,
    ]


def join_ingest_url(rtmp_url: str, stream_key: str) -> str:
    """Join an ingest application URL and a stream key."""
    if not stream_key:
        return rtmp_url
    return f"{rtmp_url.rstrip('/')}/{stream_key}"


def redact_url(url: str) -> str:
    """Replace the last path segment (the stream key) and any query string."""
    parts = urlsplit(url)
    path = parts.path
    if "/" in path.strip("/"):
        head, _ = path.rstrip("/").rsplit("/", 1)
        path = f"{head}/***REDACTED***"
    query = "***REDACTED***" if parts.query else ""
    return urlunsplit((parts.scheme, parts.netloc.rsplit("@", 1)[-1], path, query, ""))


def sanitize_args(args: list[str]) -> list[str]:
    """Redact stream keys from an argv list for logging.

    Args:
        args: ffmpeg argv

    Returns:
        Copy of argv with every URL-like argument redacted and long
        arguments truncated to prevent log bloat.
    """
    sanitized = []
    for arg in args:
        if arg.startswith(_URL_SCHEMES):
            sanitized.append(redact_url(arg))
        else:
            sanitized.append(arg[:100] + "..." if len(arg) > 100 else arg)
    return sanitized
