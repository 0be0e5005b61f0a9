"""Shared exceptions for the orchestration services.

This module contains exception classes used by both the playout scheduler
and the restream engine, so that neither engine imports the other.

Error Taxonomy:
    SpawnError: ffmpeg binary missing or rejected by the OS. No automatic retry.
    CredentialResolutionError: Platform/OAuth lookup failed for one destination.
    ProcessExitError: Unplanned nonzero exit of a media subprocess.
    PersistenceError: Store read/write still failing after bounded retries.
"""


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed."""

    pass


class SpawnError(Exception):
    """Raised when a media subprocess cannot be started.

    Attributes:
        entity_id: Channel or destination the process was started for.
        command: Executable that failed to launch.
    """

    def __init__(self, entity_id: str, command: str, reason: str) -> None:
        self.entity_id = entity_id
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {command} for {entity_id}: {reason}")


class CredentialResolutionError(Exception):
    """Raised when a social account cannot be turned into an ingest target.

    Attributes:
        platform: Platform name (facebook, youtube, twitch, custom).
        account_id: Social account identifier, if known.
    """

    def __init__(self, message: str, platform: str | None = None, account_id: str | None = None):
        self.platform = platform
        self.account_id = account_id
        super().__init__(message)


class ProcessExitError(Exception):
    """Describes an unplanned nonzero exit of a media subprocess.

    Attributes:
        entity_id: Channel or destination identifier.
        returncode: Process exit code (negative for signals).
        stderr_tail: Last stderr line captured from the process, if any.
    """

    def __init__(self, entity_id: str, returncode: int, stderr_tail: str | None = None) -> None:
        self.entity_id = entity_id
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        message = f"ffmpeg exited with code {returncode}"
        if stderr_tail:
            message += f": {stderr_tail}"
        super().__init__(message)


class PersistenceError(Exception):
    """Raised when a store operation still fails after all retries."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Store operation {operation} failed{detail}")


class InvalidStateTransitionError(Exception):
    """Raised when a status change would break monotonic run progression.

    Attributes:
        from_status: Status currently stored on the row.
        to_status: Status that was attempted.

    Example:
        >>> destination.status = DestinationStatus.STOPPED
        >>> destination.status = DestinationStatus.ACTIVE
        InvalidStateTransitionError: Invalid transition: stopped → active
    """

    def __init__(self, message: str, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"
