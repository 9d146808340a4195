# mission_control/exceptions.py
import http


class MissionControlError(Exception):
    """Base class for all errors raised by the service."""


class StoreUnavailableError(MissionControlError):
    """The keyed state store could not be reached or returned an error."""


class AuthError(MissionControlError):
    """Authentication failed or was not supplied."""

    def __init__(self, message: str, status: int = http.HTTPStatus.UNAUTHORIZED):
        super().__init__(message)
        self.message = message
        self.status = int(status)

