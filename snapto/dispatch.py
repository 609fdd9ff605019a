"""
Multi-destination dispatch.

A screenshot goes to the primary destination first and then to every
additional destination, one after the other. If the primary fails the whole
dispatch fails; failures elsewhere are reported and skipped. The first
successful result is recorded in the history store.
"""

import logging
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .config import Config, UploadDestination
from .errors import (
    DestinationDisabledError,
    DestinationNotFoundError,
    NoDestinationsAvailableError,
    SnaptoError,
    StoreError,
    UploadError,
)
from .history import HistoryStore, record_upload
from .uploaders import UploadResult, Uploader, create_uploader, credential_key, default_executor
from .vault import CredentialVault

logger = logging.getLogger(__name__)

UploaderFactory = Callable[..., Uploader]


@dataclass
class DestinationResult:
    """Outcome of one destination within a dispatch."""
    name: str
    result: Optional[UploadResult] = None
    error: Optional[Exception] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class UploadOutcome:
    primary_result: UploadResult
    primary_destination: str
    results: List[DestinationResult] = field(default_factory=list)
    size: int = 0
    elapsed_ms: int = 0
    history_id: Optional[int] = None

    @property
    def throughput(self) -> float:
        """Bytes per second over the whole dispatch."""
        if self.elapsed_ms <= 0:
            return float(self.size)
        return self.size * 1000 / self.elapsed_ms

    @property
    def failures(self) -> List[DestinationResult]:
        return [r for r in self.results if r.error is not None]


def ordered_destinations(primary: str, additional: Sequence[str] = ()) -> List[str]:
    """Primary first, then additional names without duplicates."""
    names = [primary] if primary else []
    for name in additional:
        if name and name not in names:
            names.append(name)
    return names


def resolve_destinations(config: Config, destination: Optional[str] = None) -> List[str]:
    """Destinations for an upload: an explicit one alone, else default plus additional."""
    if destination:
        return [destination]
    return ordered_destinations(config.general.default_uploader, config.general.additional_uploaders)


class Dispatcher:
    """Sends one payload to an ordered list of destinations."""

    def __init__(
        self,
        config: Config,
        vault: Optional[CredentialVault] = None,
        history: Optional[HistoryStore] = None,
        uploader_factory: UploaderFactory = create_uploader,
    ):
        self.config = config
        self.vault = vault
        self.history = history
        self.uploader_factory = uploader_factory

    def stored_password(self, destination: UploadDestination) -> Optional[str]:
        if self.vault is None or not destination.is_remote:
            return None
        try:
            return self.vault.get(credential_key(destination))
        except SnaptoError as e:
            logger.warning("Could not read stored password for %s: %s", destination.name, e)
            return None

    def build_uploader(self, destination: UploadDestination) -> Uploader:
        password = self.stored_password(destination)
        if password is None:
            return self.uploader_factory(destination)
        return self.uploader_factory(destination, password=password)

    def _lookup(self, name: str) -> UploadDestination:
        destination = self.config.get_destination(name)
        if destination is None:
            raise DestinationNotFoundError(name)
        return destination

    def dispatch(
        self,
        payload: bytes,
        filename: str,
        primary: Optional[str] = None,
        additional: Optional[Sequence[str]] = None,
    ) -> UploadOutcome:
        """Upload payload to every destination and return the combined outcome.

        Without an explicit primary the configured default is used, together
        with the configured additional destinations unless ``additional`` is
        given. An explicit primary uploads only to itself unless
        ``additional`` names more destinations.
        """
        if primary is None:
            primary = self.config.general.default_uploader
            if additional is None:
                additional = self.config.general.additional_uploaders
        names = ordered_destinations(primary, additional or ())
        if not names:
            raise NoDestinationsAvailableError()

        results: List[DestinationResult] = []
        primary_result: Optional[UploadResult] = None
        primary_name: Optional[str] = None
        start = time.monotonic()

        for index, name in enumerate(names):
            destination = self._lookup(name)
            if not destination.enabled:
                if index == 0:
                    raise DestinationDisabledError(name)
                logger.warning("Destination '%s' is disabled, skipping", name)
                results.append(DestinationResult(name=name, skipped=True))
                continue

            uploader = self.build_uploader(destination)
            uploader.validate()

            logger.info("Uploading %s to %s", filename, name)
            try:
                result = uploader.upload(payload, filename)
            except UploadError as e:
                if index == 0:
                    logger.error("Upload to primary destination %s failed: %s", name, e)
                    raise
                logger.warning("Upload to %s failed: %s", name, e)
                results.append(DestinationResult(name=name, error=e))
                continue
            except Exception as e:
                if index == 0:
                    raise
                logger.exception("Unexpected error uploading to %s", name)
                results.append(DestinationResult(name=name, error=e))
                continue

            logger.info("%s -> %s", name, result.location)
            results.append(DestinationResult(name=name, result=result))
            if primary_result is None:
                primary_result, primary_name = result, name

        if primary_result is None:
            raise NoDestinationsAvailableError("No destination accepted the upload")

        outcome = UploadOutcome(
            primary_result=primary_result,
            primary_destination=primary_name,
            results=results,
            size=len(payload),
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
        outcome.history_id = self._record(outcome, filename, payload)
        return outcome

    def _record(self, outcome: UploadOutcome, filename: str, payload: bytes) -> Optional[int]:
        if self.history is None:
            return None
        try:
            return record_upload(
                self.history, outcome.primary_destination, filename, outcome.primary_result, payload
            )
        except StoreError as e:
            logger.warning("Failed to save %s to history: %s", filename, e)
            return None

    def submit(
        self,
        payload: bytes,
        filename: str,
        primary: Optional[str] = None,
        additional: Optional[Sequence[str]] = None,
        executor: Optional[Executor] = None,
    ) -> Future:
        """Run dispatch() on a worker thread."""
        return (executor or default_executor()).submit(self.dispatch, payload, filename, primary, additional)
