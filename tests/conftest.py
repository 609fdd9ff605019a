"""Shared test fixtures for snapto."""

import io
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from PIL import Image

from snapto.config import Config, GeneralSettings, HistorySettings, SecuritySettings, UploadDestination
from snapto.errors import VaultError
from snapto.uploaders import UploadResult, Uploader, join_url


def png_bytes(size=(400, 300), color="red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeUploader(Uploader):
    """Records uploads instead of sending them anywhere."""

    uploader_type = "fake"

    def __init__(self, destination: UploadDestination, password: Optional[str] = None,
                 error: Optional[Exception] = None, calls: Optional[List[str]] = None):
        super().__init__(destination)
        self.password = password
        self.error = error
        self.calls = calls if calls is not None else []

    def upload(self, data: bytes, filename: str) -> UploadResult:
        self.calls.append(self.name())
        if self.error is not None:
            raise self.error
        return UploadResult(
            remote_path=f"/uploads/{self.name()}/{filename}",
            url=join_url(self.destination.base_url, filename),
            size=len(data),
            duration_ms=1,
        )


class FakeFactory:
    """Uploader factory whose uploaders fail for the names in ``errors``."""

    def __init__(self, errors: Optional[Dict[str, Exception]] = None):
        self.errors = errors or {}
        self.calls: List[str] = []
        self.passwords: List[Optional[str]] = []

    def __call__(self, destination: UploadDestination, password: Optional[str] = None) -> FakeUploader:
        self.passwords.append(password)
        return FakeUploader(destination, password, self.errors.get(destination.name), self.calls)


def remote_destination(name: str, **overrides) -> UploadDestination:
    fields = dict(
        name=name,
        type="sftp",
        enabled=True,
        host="example.com",
        port=22,
        username="user",
        remote_path="/srv/shots",
        base_url=f"https://{name}.example.com/shots",
    )
    fields.update(overrides)
    return UploadDestination(**fields)


@pytest.fixture
def payload() -> bytes:
    return png_bytes()


@pytest.fixture
def history_settings(tmp_path: Path) -> HistorySettings:
    return HistorySettings(enabled=True, mode="metadata", retention_days=30, max_entries=100,
                           path=str(tmp_path / "history"))


@pytest.fixture
def config(tmp_path: Path, history_settings: HistorySettings) -> Config:
    """Two remote destinations plus a local one, nothing touches the network."""
    return Config(
        general=GeneralSettings(default_uploader="a", additional_uploaders=["b"],
                                show_notifications=False),
        history=history_settings,
        uploads={
            "a": remote_destination("a"),
            "b": remote_destination("b"),
            "local": UploadDestination(name="local", type="local", local_path=str(tmp_path / "shots")),
        },
        security=SecuritySettings(use_system_keychain=False,
                                  credentials_path=str(tmp_path / "credentials.enc")),
    )


class MemoryBackend:
    """Vault backend that keeps secrets in a dict."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None, fail: bool = False):
        self.secrets = dict(secrets or {})
        self.fail = fail

    def get(self, key: str) -> Optional[str]:
        if self.fail:
            raise VaultError("store unavailable")
        return self.secrets.get(key)

    def set(self, key: str, value: str):
        if self.fail:
            raise VaultError("store unavailable")
        self.secrets[key] = value

    def delete(self, key: str):
        self.secrets.pop(key, None)

    def list_keys(self) -> List[str]:
        return sorted(self.secrets)

    def clear_all(self):
        self.secrets.clear()
