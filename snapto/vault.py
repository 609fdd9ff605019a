"""
Credential vault.

Secrets are kept either in the operating system's secret store (through
``keyring``) or in a single AES-256-GCM encrypted file whose key is derived
from a master secret with Argon2id. The encrypted file holds one JSON
envelope ``{"salt", "nonce", "ciphertext"}``; the plaintext is the whole
key -> secret mapping and is re-encrypted with a fresh salt and nonce on
every write.
"""

import base64
import json
import logging
import os
import secrets
import stat
from pathlib import Path
from typing import Dict, List, Optional

import keyring
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from keyring.errors import KeyringError, PasswordDeleteError

from .config import SecuritySettings
from .errors import VaultError

logger = logging.getLogger(__name__)

SERVICE_NAME = "snapto"
KEYS_INDEX = "__snapto_keys__"
MASTER_PASSWORD_ENV = "SNAPTO_MASTER_PASSWORD"

SALT_SIZE = 16
NONCE_SIZE = 12
KEY_SIZE = 32
FILE_MODE = stat.S_IRUSR | stat.S_IWUSR

# Argon2id defaults (m=19 MiB, t=2, p=1)
ARGON2_TIME_COST = 2
ARGON2_MEMORY_COST = 19456
ARGON2_PARALLELISM = 1


def derive_key(master_secret: str, salt: bytes) -> bytes:
    """Derive a 256-bit AES key from the master secret."""
    return hash_secret_raw(
        secret=master_secret.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def encrypt_mapping(mapping: Dict[str, str], master_secret: str) -> dict:
    """Encrypt a mapping into a JSON-serializable envelope."""
    salt = secrets.token_bytes(SALT_SIZE)
    nonce = secrets.token_bytes(NONCE_SIZE)
    plaintext = json.dumps(mapping).encode("utf-8")
    ciphertext = AESGCM(derive_key(master_secret, salt)).encrypt(nonce, plaintext, None)
    return {
        "salt": base64.b64encode(salt).decode("ascii"),
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
    }


def decrypt_mapping(envelope: dict, master_secret: str) -> Dict[str, str]:
    """Decrypt an envelope produced by encrypt_mapping."""
    try:
        salt = base64.b64decode(envelope["salt"], validate=True)
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
    except (KeyError, TypeError, ValueError) as e:
        raise VaultError(f"Malformed credential store: {e}") from e

    if len(salt) != SALT_SIZE:
        raise VaultError("Malformed credential store: bad salt length")
    if len(nonce) != NONCE_SIZE:
        raise VaultError("Malformed credential store: bad nonce length")

    try:
        plaintext = AESGCM(derive_key(master_secret, salt)).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise VaultError("Credential store could not be decrypted (wrong master password or corrupt file)") from e

    try:
        mapping = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise VaultError(f"Credential store contents are invalid: {e}") from e
    if not isinstance(mapping, dict):
        raise VaultError("Credential store contents are invalid: expected a mapping")
    return mapping


class KeyringBackend:
    """OS secret store. It cannot enumerate entries, so an index entry lists the keys."""

    def __init__(self, service: str = SERVICE_NAME):
        self.service = service

    def get(self, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as e:
            raise VaultError(f"Failed to read '{key}' from system keychain: {e}") from e

    def set(self, key: str, value: str):
        try:
            keyring.set_password(self.service, key, value)
        except KeyringError as e:
            raise VaultError(f"Failed to store '{key}' in system keychain: {e}") from e
        self._update_index(key, add=True)

    def delete(self, key: str):
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            pass  # already gone
        except KeyringError as e:
            raise VaultError(f"Failed to delete '{key}' from system keychain: {e}") from e
        self._update_index(key, add=False)

    def list_keys(self) -> List[str]:
        raw = self.get(KEYS_INDEX)
        if raw is None:
            return []
        try:
            keys = json.loads(raw)
        except json.JSONDecodeError as e:
            raise VaultError(f"Failed to parse keychain key index: {e}") from e
        if not isinstance(keys, list):
            raise VaultError("Keychain key index is not a list")
        return [str(k) for k in keys]

    def _update_index(self, key: str, add: bool):
        if key == KEYS_INDEX:
            return
        keys = self.list_keys()
        if add and key not in keys:
            keys.append(key)
        elif not add and key in keys:
            keys.remove(key)
        else:
            return
        try:
            keyring.set_password(self.service, KEYS_INDEX, json.dumps(keys))
        except KeyringError as e:
            raise VaultError(f"Failed to update keychain key index: {e}") from e

    def clear_all(self):
        for key in self.list_keys():
            self.delete(key)
        try:
            keyring.delete_password(self.service, KEYS_INDEX)
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            raise VaultError(f"Failed to delete keychain key index: {e}") from e


class EncryptedFileBackend:
    """All secrets in one encrypted JSON envelope on disk."""

    def __init__(self, path: Path, master_secret: Optional[str] = None):
        self.path = Path(path).expanduser()
        self._master_secret = master_secret

    def master_secret(self) -> str:
        secret = self._master_secret or os.environ.get(MASTER_PASSWORD_ENV)
        if not secret:
            raise VaultError(
                f"No master password available for {self.path}; set {MASTER_PASSWORD_ENV}"
            )
        return secret

    def load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            envelope = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise VaultError(f"Failed to read credential store {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise VaultError(f"Failed to parse credential store {self.path}: {e}") from e
        if not isinstance(envelope, dict):
            raise VaultError(f"Failed to parse credential store {self.path}: not an object")
        return decrypt_mapping(envelope, self.master_secret())

    def save(self, mapping: Dict[str, str]):
        envelope = encrypt_mapping(mapping, self.master_secret())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # O_CREAT mode only applies to new files
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(envelope, indent=2))
            self.path.chmod(FILE_MODE)
        except OSError as e:
            raise VaultError(f"Failed to write credential store {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self.load().get(key)

    def set(self, key: str, value: str):
        mapping = self.load()
        mapping[key] = value
        self.save(mapping)

    def delete(self, key: str):
        mapping = self.load()
        if mapping.pop(key, None) is not None:
            self.save(mapping)

    def list_keys(self) -> List[str]:
        return list(self.load())

    def clear_all(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise VaultError(f"Failed to remove credential store {self.path}: {e}") from e


class CredentialVault:
    """Front door for storing destination passwords."""

    def __init__(self, backend):
        self.backend = backend

    @classmethod
    def from_settings(cls, settings: SecuritySettings, master_secret: Optional[str] = None) -> "CredentialVault":
        if settings.use_system_keychain:
            return cls(KeyringBackend())
        return cls(EncryptedFileBackend(Path(settings.credentials_path), master_secret))

    @property
    def kind(self) -> str:
        return "keychain" if isinstance(self.backend, KeyringBackend) else "encrypted-file"

    def get(self, key: str) -> Optional[str]:
        return self.backend.get(key)

    def set(self, key: str, value: str):
        self.backend.set(key, value)
        logger.debug("Stored credential %s in %s", key, self.kind)

    def delete(self, key: str):
        self.backend.delete(key)
        logger.debug("Deleted credential %s from %s", key, self.kind)

    def list_keys(self) -> List[str]:
        return self.backend.list_keys()

    def clear_all(self):
        self.backend.clear_all()
        logger.info("Cleared all credentials from %s", self.kind)
