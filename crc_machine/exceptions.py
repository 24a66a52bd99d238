"""Custom exceptions for crc-machine."""

from __future__ import annotations

from typing import Optional

from crc_machine.models import CertExpiryState


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class RetriableError(ManagerError):
    """Marks a failure that retry_after() should try again."""

    def __init__(self, cause: Optional[BaseException] = None, message: str = "") -> None:
        self.cause = cause
        super().__init__(message or (str(cause) if cause is not None else "retriable error"))


class StageError(ManagerError):
    """A lifecycle step failed; carries the human-readable stage label."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")


class BundleMismatchError(ManagerError):
    """The requested bundle differs from the one the instance was created with."""

    def __init__(self, requested: str, existing: str) -> None:
        self.requested = requested
        self.existing = existing
        super().__init__(f"Bundle '{requested}' was requested, but the existing VM is using '{existing}'")


class CertificateCheckError(ManagerError):
    """Certificate validity check failed for a reason other than expiry."""

    def __init__(self, message: str, state: Optional[CertExpiryState] = None) -> None:
        self.state = state if state is not None else CertExpiryState.CHECK_FAILED
        super().__init__(message)


class SSHCommandError(ManagerError):
    """A command run over SSH exited with a non-zero status."""

    def __init__(self, command: str, status: int, output: str) -> None:
        self.command = command
        self.status = status
        self.output = output
        super().__init__(f"ssh command error:\ncommand : {command}\nerr     : exit status {status}\noutput  : {output}")
