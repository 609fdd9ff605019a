"""Uploader interface shared by every transport."""

import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Optional

from ..config import UploadDestination
from ..errors import ConfigError

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def default_executor() -> ThreadPoolExecutor:
    """Worker pool for blocking uploads, created on first use."""
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="snapto-upload")
        return _executor


@dataclass(frozen=True)
class UploadResult:
    """Where an upload ended up."""
    remote_path: str
    url: Optional[str]
    size: int
    duration_ms: int

    @property
    def location(self) -> str:
        return self.url or self.remote_path


@dataclass(frozen=True)
class UploaderInfo:
    name: str
    enabled: bool
    type: str

    def to_dict(self) -> dict:
        return asdict(self)


def credential_key(destination: UploadDestination) -> str:
    """Vault key holding the password for a remote destination."""
    return f"{destination.type}_password_{destination.name}"


def join_url(base_url: Optional[str], filename: str) -> Optional[str]:
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/{filename}"


class Uploader(ABC):
    """Sends a payload to one configured destination."""

    uploader_type = "generic"

    def __init__(self, destination: UploadDestination):
        self.destination = destination

    def name(self) -> str:
        return self.destination.name

    def is_enabled(self) -> bool:
        return self.destination.enabled

    def info(self) -> UploaderInfo:
        return UploaderInfo(name=self.name(), enabled=self.is_enabled(), type=self.uploader_type)

    def validate(self):
        """Check required fields before any network or disk I/O."""

    def _require(self, *field_names: str):
        for field_name in field_names:
            if not getattr(self.destination, field_name):
                raise ConfigError(f"Uploader '{self.name()}': {field_name} is required")

    @abstractmethod
    def upload(self, data: bytes, filename: str) -> UploadResult:
        """Write data to the destination under filename."""

    def submit(self, data: bytes, filename: str, executor: Optional[Executor] = None) -> Future:
        """Run upload() on a worker thread and return its future."""
        return (executor or default_executor()).submit(self.upload, data, filename)
