"""Copies screenshots into a directory on this machine."""

import logging
import os
import time
from pathlib import Path

from ..errors import ConfigError, TransferError
from .base import UploadResult, Uploader, join_url

logger = logging.getLogger(__name__)


def expand_path(path: str) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(path)))


class LocalUploader(Uploader):
    uploader_type = "local"

    def target_dir(self) -> Path:
        self._require("local_path")
        return expand_path(self.destination.local_path)

    def validate(self):
        base = self.target_dir()
        if not base.exists():
            try:
                base.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Uploader '{self.name()}': could not create {base}: {e}") from e
            logger.info("Created local upload directory %s", base)
        if not base.is_dir():
            raise ConfigError(f"Uploader '{self.name()}': {base} is not a directory")
        if not os.access(base, os.W_OK):
            raise ConfigError(f"Uploader '{self.name()}': {base} is not writable")

    def upload(self, data: bytes, filename: str) -> UploadResult:
        start = time.monotonic()
        base = self.target_dir()
        target = base / filename
        try:
            base.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise TransferError(self.name(), f"failed to write {target}", e) from e

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Saved %s (%d bytes) to %s", filename, len(data), target)
        return UploadResult(
            remote_path=str(target),
            url=join_url(self.destination.base_url, filename),
            size=len(data),
            duration_ms=duration_ms,
        )
