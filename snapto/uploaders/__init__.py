"""Uploader implementations and the factory that picks one per destination."""

from typing import Optional

from ..config import UploadDestination
from ..errors import ConfigError
from .base import UploaderInfo, UploadResult, Uploader, credential_key, default_executor, join_url
from .local import LocalUploader
from .sftp import SftpUploader

__all__ = [
    "LocalUploader",
    "SftpUploader",
    "UploadResult",
    "Uploader",
    "UploaderInfo",
    "create_uploader",
    "credential_key",
    "default_executor",
    "join_url",
]


def create_uploader(destination: UploadDestination, password: Optional[str] = None) -> Uploader:
    """Build the uploader matching a destination's type."""
    if destination.type == "local":
        return LocalUploader(destination)
    if destination.type in ("sftp", "ssh"):
        return SftpUploader(destination, password=password)
    raise ConfigError(f"Uploader '{destination.name}': unknown type '{destination.type}'")
