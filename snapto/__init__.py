"""
SnapTo - push clipboard screenshots to SFTP/SSH servers and local folders,
keeping a size-bounded history of what went where.
"""

__version__ = "0.3.0"

from .errors import (
    AuthenticationError,
    ConfigError,
    NoImageAvailableError,
    RemoteConnectionError,
    SnaptoError,
    StoreError,
    TransferError,
    UploadError,
    VaultError,
)
from .uploaders import UploadResult, Uploader, create_uploader

__all__ = [
    "AuthenticationError",
    "ConfigError",
    "NoImageAvailableError",
    "RemoteConnectionError",
    "SnaptoError",
    "StoreError",
    "TransferError",
    "UploadError",
    "UploadResult",
    "Uploader",
    "VaultError",
    "create_uploader",
]
