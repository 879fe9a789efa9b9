from __future__ import annotations


class HomelinkError(Exception):
    """Base class for every error raised by homelink."""


class BackendError(HomelinkError):
    """Transient I/O failure talking to the backend (network, HTTP, bad body)."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class CommandRejected(BackendError):
    """The backend answered with success=false."""


class MessageError(HomelinkError, ValueError):
    """A push payload does not have the shape expected for its topic."""


class EnrollmentInProgress(HomelinkError):
    def __init__(self, premises_id: int | None = None):
        super().__init__("Enrollment already in progress")
        self.premises_id = premises_id


class GatewayUnavailable(HomelinkError):
    def __init__(self, liveness: str):
        super().__init__(f"Gateway is not available ({liveness})")
        self.liveness = liveness


class CommandFailed(HomelinkError):
    def __init__(self, device_id: int, action: str, reason: str):
        super().__init__(f"{action} on device {device_id} failed: {reason}")
        self.device_id = device_id
        self.action = action
        self.reason = reason
