"""
SFTP/SSH uploader.

One implementation serves both the ``sftp`` and ``ssh`` destination types:
connect, authenticate (public key, then password, then ssh-agent), make
sure the remote directory exists and write the file over SFTP.
"""

import logging
import posixpath
import socket
import stat
import time
from pathlib import Path
from typing import Optional

import paramiko

from ..config import DEFAULT_SSH_PORT, UploadDestination
from ..errors import AuthenticationError, ConfigError, RemoteConnectionError, TransferError
from .base import UploadResult, Uploader, join_url

logger = logging.getLogger(__name__)

KNOWN_HOSTS_PATH = Path.home() / ".ssh" / "known_hosts"
REMOTE_DIR_MODE = 0o755


class SftpUploader(Uploader):
    """Uploads over SFTP using paramiko."""

    uploader_type = "sftp"

    def __init__(self, destination: UploadDestination, password: Optional[str] = None):
        super().__init__(destination)
        self.uploader_type = destination.type
        self.password = password

    def validate(self):
        self._require("host", "username", "remote_path")
        if self.destination.use_key_auth and not self.destination.key_path:
            raise ConfigError(f"Uploader '{self.name()}': key_path is required for key authentication")

    @property
    def port(self) -> int:
        return self.destination.port or DEFAULT_SSH_PORT

    def key_filename(self) -> Optional[str]:
        if not self.destination.use_key_auth or not self.destination.key_path:
            return None
        return str(Path(self.destination.key_path).expanduser())

    def connect(self) -> paramiko.SSHClient:
        """Open an authenticated SSH connection."""
        dest = self.destination
        client = paramiko.SSHClient()

        # Load known hosts or auto-add on first connection
        client.load_system_host_keys()
        if KNOWN_HOSTS_PATH.exists():
            client.load_host_keys(str(KNOWN_HOSTS_PATH))
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        key_filename = self.key_filename()
        if key_filename:
            logger.debug("Authenticating %s@%s with key %s", dest.username, dest.host, key_filename)
        elif self.password is not None:
            logger.debug("Authenticating %s@%s with password", dest.username, dest.host)
        else:
            logger.debug("Authenticating %s@%s with ssh-agent", dest.username, dest.host)

        # paramiko tries the key first, then the agent (only when no password
        # is available) and finally the password; the password also unlocks
        # an encrypted key.
        try:
            client.connect(
                hostname=dest.host,
                port=self.port,
                username=dest.username,
                password=self.password,
                key_filename=key_filename,
                look_for_keys=False,
                allow_agent=self.password is None,
                timeout=dest.timeout,
                banner_timeout=dest.timeout,
                auth_timeout=dest.timeout,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationError(self.name(), "authentication failed", e) from e
        except paramiko.SSHException as e:
            # "No authentication methods available" arrives as a plain
            # SSHException after the handshake has already succeeded.
            transport = client.get_transport()
            rejected = (
                not isinstance(e, paramiko.BadHostKeyException)
                and transport is not None
                and transport.is_active()
                and not transport.is_authenticated()
            )
            client.close()
            if rejected:
                raise AuthenticationError(self.name(), "authentication failed", e) from e
            raise RemoteConnectionError(
                self.name(), f"could not connect to {dest.host}:{self.port}", e
            ) from e
        except (socket.timeout, OSError) as e:
            client.close()
            raise RemoteConnectionError(
                self.name(), f"could not connect to {dest.host}:{self.port}", e
            ) from e

        logger.info("SSH authentication to %s succeeded", dest.host)
        return client

    def ensure_remote_dir(self, sftp: paramiko.SFTPClient, remote_dir: str):
        try:
            attrs = sftp.stat(remote_dir)
        except IOError:
            attrs = None

        if attrs is None:
            logger.debug("Creating remote directory %s", remote_dir)
            try:
                sftp.mkdir(remote_dir, REMOTE_DIR_MODE)
            except IOError as e:
                # Another client may have created it in the meantime
                try:
                    attrs = sftp.stat(remote_dir)
                except IOError:
                    raise TransferError(self.name(), f"failed to create directory {remote_dir}", e) from e
            else:
                logger.info("Created remote directory %s", remote_dir)
                return

        if attrs.st_mode is not None and not stat.S_ISDIR(attrs.st_mode):
            raise TransferError(self.name(), f"path exists but is not a directory: {remote_dir}")

    def transfer(self, client: paramiko.SSHClient, data: bytes, filename: str) -> str:
        remote_dir = self.destination.remote_path
        remote_file = posixpath.join(remote_dir, filename)
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(self.name(), "failed to open SFTP session", e) from e

        try:
            self.ensure_remote_dir(sftp, remote_dir)
            try:
                with sftp.open(remote_file, "wb") as remote:
                    remote.write(data)
                    remote.flush()
            except (paramiko.SSHException, OSError) as e:
                raise TransferError(self.name(), f"failed to write {remote_file}", e) from e
        finally:
            sftp.close()
        return remote_file

    def upload(self, data: bytes, filename: str) -> UploadResult:
        start = time.monotonic()
        logger.info("Starting %s upload of %s (%d bytes) to %s",
                    self.uploader_type, filename, len(data), self.name())

        client = self.connect()
        try:
            remote_file = self.transfer(client, data, filename)
        finally:
            client.close()

        url = join_url(self.destination.base_url, filename)
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Uploaded %s to %s:%s", filename, self.destination.host, remote_file)
        return UploadResult(remote_path=remote_file, url=url, size=len(data), duration_ms=duration_ms)
