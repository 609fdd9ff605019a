"""
Interactive authentication recovery for re-sends.

When a remote destination rejects our credentials the pending upload is
parked, the user is asked for a password, and the upload is retried exactly
once with a fresh uploader. A password that works is saved to the vault.

    Idle -> AwaitingCredential -> Retrying -> Success | Failed
    AwaitingCredential -> Idle (cancelled)
"""

import enum
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

from .config import UploadDestination
from .errors import AuthenticationError, OperationCancelledError, SnaptoError
from .uploaders import UploadResult, create_uploader, credential_key
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class RecoveryState(enum.Enum):
    IDLE = "idle"
    AWAITING_CREDENTIAL = "awaiting_credential"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PendingUpload:
    destination: UploadDestination
    data: bytes
    filename: str
    error: AuthenticationError
    future: Future


class AuthRecovery:
    """Drives one prompt-and-retry cycle per authentication failure."""

    def __init__(self, vault: Optional[CredentialVault] = None, uploader_factory=create_uploader):
        self.vault = vault
        self.uploader_factory = uploader_factory
        self.state = RecoveryState.IDLE
        self.pending: Optional[PendingUpload] = None

    def begin(self, destination: UploadDestination, data: bytes, filename: str,
              error: AuthenticationError) -> Future:
        """Park an upload that failed authentication and wait for a credential."""
        if self.state in (RecoveryState.AWAITING_CREDENTIAL, RecoveryState.RETRYING):
            raise SnaptoError("A credential prompt is already pending")
        future = Future()
        self.pending = PendingUpload(destination, data, filename, error, future)
        self.state = RecoveryState.AWAITING_CREDENTIAL
        logger.info("Authentication to %s failed, waiting for credential", destination.name)
        return future

    def _take_pending(self) -> PendingUpload:
        if self.state is not RecoveryState.AWAITING_CREDENTIAL or self.pending is None:
            raise SnaptoError("No upload is waiting for a credential")
        pending, self.pending = self.pending, None
        return pending

    def submit(self, credential: str) -> UploadResult:
        """Retry the parked upload once with the supplied credential."""
        pending = self._take_pending()
        self.state = RecoveryState.RETRYING

        uploader = self.uploader_factory(pending.destination, password=credential)
        try:
            uploader.validate()
            result = uploader.upload(pending.data, pending.filename)
        except SnaptoError as e:
            self.state = RecoveryState.FAILED
            pending.future.set_exception(e)
            raise

        self.state = RecoveryState.SUCCESS
        self._remember(pending.destination, credential)
        pending.future.set_result(result)
        return result

    def cancel(self):
        """User dismissed the prompt; the parked upload ends with OperationCancelledError."""
        pending = self._take_pending()
        self.state = RecoveryState.IDLE
        pending.future.set_exception(
            OperationCancelledError(f"Upload of {pending.filename} to {pending.destination.name} cancelled")
        )

    def _remember(self, destination: UploadDestination, credential: str):
        if self.vault is None:
            return
        try:
            self.vault.set(credential_key(destination), credential)
        except SnaptoError as e:
            logger.warning("Upload succeeded but the password for %s was not saved: %s",
                           destination.name, e)

    def resend(self, destination: UploadDestination, data: bytes, filename: str,
               prompt: Callable[[str], Optional[str]]) -> UploadResult:
        """Upload, asking for a password through prompt() if authentication fails.

        prompt() receives a message and returns the credential, or None when
        the user dismisses it.
        """
        password = None
        if self.vault is not None and destination.is_remote:
            try:
                password = self.vault.get(credential_key(destination))
            except SnaptoError as e:
                logger.warning("Could not read stored password for %s: %s", destination.name, e)

        if password is None:
            uploader = self.uploader_factory(destination)
        else:
            uploader = self.uploader_factory(destination, password=password)
        uploader.validate()
        try:
            return uploader.upload(data, filename)
        except AuthenticationError as e:
            future = self.begin(destination, data, filename, e)

        credential = prompt(f"Password for {destination.name}: ")
        if credential is None:
            self.cancel()
            return future.result()  # raises OperationCancelledError
        return self.submit(credential)
