"""Exception hierarchy shared by uploaders, dispatch, history and the vault."""

from typing import Optional


class SnaptoError(Exception):
    """Base class for every error raised by snapto."""


class ConfigError(SnaptoError):
    """Missing or invalid configuration, detected before any I/O."""


class DestinationNotFoundError(ConfigError):
    def __init__(self, destination: str):
        self.destination = destination
        super().__init__(f"Destination '{destination}' not found in configuration")


class DestinationDisabledError(ConfigError):
    def __init__(self, destination: str):
        self.destination = destination
        super().__init__(f"Destination '{destination}' is disabled")


class NoDestinationsAvailableError(ConfigError):
    def __init__(self, message: str = "No enabled destinations to upload to"):
        super().__init__(message)


class UploadError(SnaptoError):
    """An upload to a single destination failed."""

    def __init__(self, destination: str, message: str, cause: Optional[BaseException] = None):
        self.destination = destination
        self.cause = cause
        text = f"{destination}: {message}"
        if cause is not None:
            text = f"{text}: {cause}"
        super().__init__(text)


class RemoteConnectionError(UploadError):
    """Network or SSH handshake failure."""


class AuthenticationError(UploadError):
    """Every authentication method was rejected by the server."""


class TransferError(UploadError):
    """The destination accepted the connection but the write failed."""


class StoreError(SnaptoError):
    """History database or thumbnail persistence failure."""


class VaultError(SnaptoError):
    """Credential storage failure, including an undecryptable store file."""


class NoImageAvailableError(SnaptoError):
    def __init__(self, message: str = "No image found in clipboard"):
        super().__init__(message)


class OperationCancelledError(SnaptoError):
    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)
