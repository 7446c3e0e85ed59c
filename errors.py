from typing import Iterable, Optional


class CamfetchError(Exception):
    """Base class of errors that cross the camfetch API boundary."""


class MalformedInputError(CamfetchError, ValueError):
    """Invalid host, port, URL or command supplied by the caller."""


class InvalidCommandError(MalformedInputError):
    pass


class AuthenticationError(CamfetchError):
    """Credentials were rejected by the device."""

    def __init__(
        self,
        message: str,
        *,
        protocol: Optional[str] = None,
        status: Optional[int] = None,
        lock_seconds: Optional[int] = None,
    ):
        super().__init__(message)
        self.protocol = protocol
        self.status = status
        self.lock_seconds = lock_seconds


class ExhaustedStrategiesError(CamfetchError):
    """Every strategy of an operation failed."""

    def __init__(self, message: str, attempted: Iterable[str] = ()):
        super().__init__(message)
        self.attempted = list(attempted)


class CapabilityError(CamfetchError):
    """The camera does not offer the requested capability."""


class ProfileGUnsupported(CamfetchError):
    """ONVIF answered but recording search is not implemented."""

    def __init__(self, message: str, fault: Optional[str] = None):
        super().__init__(message)
        self.fault = fault


class FtpAuthError(CamfetchError):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
