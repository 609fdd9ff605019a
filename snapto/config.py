"""
Configuration for SnapTo.

Settings live in a YAML file (``~/.snapto/config.yaml`` unless overridden by
the SNAPTO_CONFIG environment variable). A fresh default file is written the
first time the configuration is loaded.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .errors import ConfigError

CONFIG_DIR = Path.home() / ".snapto"
CONFIG_ENV_VAR = "SNAPTO_CONFIG"
DEFAULT_SSH_PORT = 22
CHECK_INTERVAL = 0.5  # seconds

UPLOADER_TYPES = ("local", "sftp", "ssh")
HISTORY_MODES = ("metadata", "thumbnails", "full")
CLIPBOARD_COPY_MODES = ("auto", "url", "path")


@dataclass
class UploadDestination:
    """A named place screenshots can be sent to."""
    name: str
    type: str
    enabled: bool = True
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    remote_path: Optional[str] = None
    base_url: Optional[str] = None
    local_path: Optional[str] = None
    use_key_auth: Optional[bool] = None
    key_path: Optional[str] = None
    timeout: Optional[int] = None

    @property
    def is_remote(self) -> bool:
        return self.type in ("sftp", "ssh")

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("name")
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class GeneralSettings:
    copy_url_to_clipboard: bool = True
    clipboard_copy_mode: str = "auto"
    show_notifications: bool = True
    default_uploader: str = "local"
    additional_uploaders: List[str] = field(default_factory=list)
    watch_interval_ms: int = int(CHECK_INTERVAL * 1000)


@dataclass
class NamingSettings:
    template: str = "screenshot_{date}_{time}"
    date_format: str = "%Y%m%d"
    time_format: str = "%H%M%S"
    default_extension: str = "png"


@dataclass
class HistorySettings:
    enabled: bool = True
    mode: str = "thumbnails"
    retention_days: int = 30
    max_entries: int = 1000
    path: str = "~/.snapto"

    @property
    def directory(self) -> Path:
        return Path(self.path).expanduser()


@dataclass
class SecuritySettings:
    use_system_keychain: bool = True
    credentials_path: str = "~/.snapto/credentials.enc"


def default_uploads() -> Dict[str, UploadDestination]:
    return {
        "local": UploadDestination(
            name="local",
            type="local",
            enabled=True,
            local_path="~/Pictures/Screenshots",
        ),
        "my-server": UploadDestination(
            name="my-server",
            type="sftp",
            enabled=False,
            host="example.com",
            port=DEFAULT_SSH_PORT,
            username="user",
            remote_path="/var/www/screenshots",
            base_url="https://example.com/screenshots",
            use_key_auth=True,
            key_path="~/.ssh/id_rsa",
            timeout=30,
        ),
    }


@dataclass
class Config:
    general: GeneralSettings = field(default_factory=GeneralSettings)
    naming: NamingSettings = field(default_factory=NamingSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    uploads: Dict[str, UploadDestination] = field(default_factory=default_uploads)
    security: SecuritySettings = field(default_factory=SecuritySettings)

    def get_destination(self, name: str) -> Optional[UploadDestination]:
        return self.uploads.get(name)

    def validate(self):
        """Check the whole configuration, raising ConfigError on the first problem."""
        if not any(dest.enabled for dest in self.uploads.values()):
            raise ConfigError("No uploaders are enabled")

        default = self.uploads.get(self.general.default_uploader)
        if default is None:
            raise ConfigError(f"Default uploader '{self.general.default_uploader}' does not exist")
        if not default.enabled:
            raise ConfigError(f"Default uploader '{self.general.default_uploader}' is disabled")

        if self.general.clipboard_copy_mode not in CLIPBOARD_COPY_MODES:
            raise ConfigError(f"Unknown clipboard copy mode '{self.general.clipboard_copy_mode}'")
        if self.history.mode not in HISTORY_MODES:
            raise ConfigError(f"Unknown history mode '{self.history.mode}'")

        for name, dest in self.uploads.items():
            if not dest.enabled:
                continue
            if dest.type not in UPLOADER_TYPES:
                raise ConfigError(f"Uploader '{name}': type '{dest.type}' is not supported")
            if dest.is_remote:
                for required in ("host", "username", "remote_path"):
                    if not getattr(dest, required):
                        raise ConfigError(f"Uploader '{name}': {required} is required for {dest.type}")
            elif not dest.local_path:
                raise ConfigError(f"Uploader '{name}': local_path is required for local")

    def to_dict(self) -> dict:
        return {
            "general": asdict(self.general),
            "naming": asdict(self.naming),
            "history": asdict(self.history),
            "uploads": {name: dest.to_dict() for name, dest in self.uploads.items()},
            "security": asdict(self.security),
        }


def config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path).expanduser()
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return CONFIG_DIR / "config.yaml"


def _section(cls, raw, section: str):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")
    return cls(**raw)


def _destination(name: str, raw) -> UploadDestination:
    if not isinstance(raw, dict):
        raise ConfigError(f"Uploader '{name}' must be a mapping")
    data = dict(raw)
    if "type" not in data:
        raise ConfigError(f"Uploader '{name}': type is required")
    known = {f.name for f in fields(UploadDestination)} - {"name"}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Uploader '{name}': unknown keys {', '.join(sorted(unknown))}")
    port = data.get("port")
    if port is not None and not isinstance(port, int):
        raise ConfigError(f"Uploader '{name}': port must be an integer")
    return UploadDestination(name=name, **data)


def config_from_dict(data: dict) -> Config:
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    uploads_raw = data.get("uploads")
    if uploads_raw is None:
        uploads = default_uploads()
    elif isinstance(uploads_raw, dict):
        # safe_load keeps declaration order, so additional uploaders stay deterministic
        uploads = {str(name): _destination(str(name), raw) for name, raw in uploads_raw.items()}
    else:
        raise ConfigError("Section 'uploads' must be a mapping")

    general = _section(GeneralSettings, data.get("general"), "general")
    general.additional_uploaders = list(general.additional_uploaders or [])

    return Config(
        general=general,
        naming=_section(NamingSettings, data.get("naming"), "naming"),
        history=_section(HistorySettings, data.get("history"), "history"),
        uploads=uploads,
        security=_section(SecuritySettings, data.get("security"), "security"),
    )


def load_config(path: Optional[Path] = None) -> Config:
    """Load the configuration, writing defaults if the file does not exist yet."""
    path = config_path(path)
    if not path.exists():
        config = Config()
        save_config(config, path)
        return config

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e

    try:
        return config_from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e


def save_config(config: Config, path: Optional[Path] = None) -> Path:
    path = config_path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.to_dict(), f, sort_keys=False, default_flow_style=False)
    except OSError as e:
        raise ConfigError(f"Failed to save configuration to {path}: {e}") from e
    return path
