"""Tests for interactive authentication recovery."""

import pytest

from snapto.errors import AuthenticationError, OperationCancelledError, SnaptoError, TransferError
from snapto.recovery import AuthRecovery, RecoveryState
from snapto.vault import CredentialVault

from conftest import FakeUploader, MemoryBackend, remote_destination


class PasswordFactory:
    """Uploaders that only accept one password."""

    def __init__(self, accepted: str = "right", other_error=None):
        self.accepted = accepted
        self.other_error = other_error
        self.passwords = []

    def __call__(self, destination, password=None):
        self.passwords.append(password)
        error = None
        if self.other_error is not None:
            error = self.other_error
        elif password != self.accepted:
            error = AuthenticationError(destination.name, "authentication failed")
        return FakeUploader(destination, password, error)


@pytest.fixture
def dest():
    return remote_destination("box")


@pytest.fixture
def vault():
    return CredentialVault(MemoryBackend())


def auth_error():
    return AuthenticationError("box", "authentication failed")


class TestStateMachine:
    def test_starts_idle(self):
        assert AuthRecovery().state is RecoveryState.IDLE

    def test_begin_awaits_credential(self, dest, payload):
        recovery = AuthRecovery(uploader_factory=PasswordFactory())
        future = recovery.begin(dest, payload, "a.png", auth_error())
        assert recovery.state is RecoveryState.AWAITING_CREDENTIAL
        assert not future.done()

    def test_only_one_pending(self, dest, payload):
        recovery = AuthRecovery(uploader_factory=PasswordFactory())
        recovery.begin(dest, payload, "a.png", auth_error())
        with pytest.raises(SnaptoError, match="already pending"):
            recovery.begin(dest, payload, "b.png", auth_error())

    def test_submit_success(self, dest, payload, vault):
        factory = PasswordFactory()
        recovery = AuthRecovery(vault=vault, uploader_factory=factory)
        future = recovery.begin(dest, payload, "a.png", auth_error())

        result = recovery.submit("right")

        assert recovery.state is RecoveryState.SUCCESS
        assert future.result(timeout=1) == result
        assert result.url == "https://box.example.com/shots/a.png"
        assert factory.passwords == ["right"]
        assert vault.get("sftp_password_box") == "right"

    def test_submit_wrong_password_fails_once(self, dest, payload, vault):
        factory = PasswordFactory()
        recovery = AuthRecovery(vault=vault, uploader_factory=factory)
        future = recovery.begin(dest, payload, "a.png", auth_error())

        with pytest.raises(AuthenticationError):
            recovery.submit("wrong")

        assert recovery.state is RecoveryState.FAILED
        assert factory.passwords == ["wrong"]
        with pytest.raises(AuthenticationError):
            future.result(timeout=1)
        assert vault.list_keys() == []

    def test_submit_other_error(self, dest, payload):
        factory = PasswordFactory(other_error=TransferError("box", "disk full"))
        recovery = AuthRecovery(uploader_factory=factory)
        recovery.begin(dest, payload, "a.png", auth_error())
        with pytest.raises(TransferError):
            recovery.submit("right")
        assert recovery.state is RecoveryState.FAILED

    def test_submit_without_pending(self):
        with pytest.raises(SnaptoError, match="No upload is waiting"):
            AuthRecovery().submit("x")

    def test_cancel(self, dest, payload):
        factory = PasswordFactory()
        recovery = AuthRecovery(uploader_factory=factory)
        future = recovery.begin(dest, payload, "a.png", auth_error())

        recovery.cancel()

        assert recovery.state is RecoveryState.IDLE
        assert factory.passwords == []
        with pytest.raises(OperationCancelledError, match="a.png"):
            future.result(timeout=1)

    def test_can_begin_again_after_failure(self, dest, payload):
        recovery = AuthRecovery(uploader_factory=PasswordFactory())
        recovery.begin(dest, payload, "a.png", auth_error())
        with pytest.raises(AuthenticationError):
            recovery.submit("wrong")
        recovery.begin(dest, payload, "a.png", auth_error())
        assert recovery.state is RecoveryState.AWAITING_CREDENTIAL

    def test_vault_write_failure_keeps_success(self, dest, payload):
        recovery = AuthRecovery(vault=CredentialVault(MemoryBackend(fail=True)),
                                uploader_factory=PasswordFactory())
        recovery.begin(dest, payload, "a.png", auth_error())
        result = recovery.submit("right")
        assert recovery.state is RecoveryState.SUCCESS
        assert result.size == len(payload)


class TestResend:
    def test_stored_password_works(self, dest, payload):
        vault = CredentialVault(MemoryBackend({"sftp_password_box": "right"}))
        factory = PasswordFactory()
        prompts = []
        result = AuthRecovery(vault=vault, uploader_factory=factory).resend(
            dest, payload, "a.png", prompts.append
        )
        assert result.remote_path == "/uploads/box/a.png"
        assert prompts == []
        assert factory.passwords == ["right"]

    def test_prompts_after_rejection(self, dest, payload, vault):
        factory = PasswordFactory()
        recovery = AuthRecovery(vault=vault, uploader_factory=factory)
        result = recovery.resend(dest, payload, "a.png", lambda message: "right")
        assert result.size == len(payload)
        assert factory.passwords == [None, "right"]
        assert recovery.state is RecoveryState.SUCCESS
        assert vault.get("sftp_password_box") == "right"

    def test_prompt_message_names_destination(self, dest, payload):
        messages = []

        def prompt(message):
            messages.append(message)
            return "right"

        AuthRecovery(uploader_factory=PasswordFactory()).resend(dest, payload, "a.png", prompt)
        assert messages == ["Password for box: "]

    def test_dismissed_prompt(self, dest, payload):
        recovery = AuthRecovery(uploader_factory=PasswordFactory())
        with pytest.raises(OperationCancelledError):
            recovery.resend(dest, payload, "a.png", lambda message: None)
        assert recovery.state is RecoveryState.IDLE

    def test_second_rejection(self, dest, payload):
        recovery = AuthRecovery(uploader_factory=PasswordFactory())
        with pytest.raises(AuthenticationError):
            recovery.resend(dest, payload, "a.png", lambda message: "wrong")
        assert recovery.state is RecoveryState.FAILED

    def test_other_errors_not_recovered(self, dest, payload):
        prompts = []
        recovery = AuthRecovery(uploader_factory=PasswordFactory(other_error=TransferError("box", "x")))
        with pytest.raises(TransferError):
            recovery.resend(dest, payload, "a.png", prompts.append)
        assert prompts == []
        assert recovery.state is RecoveryState.IDLE
