"""Persistence collaborators - abstract storage for the governance core"""
from abc import ABC, abstractmethod
from typing import Callable, Iterable, TypeVar, TYPE_CHECKING
import structlog

from phr_governance.errors import GovernanceError, StorageUnavailableError

if TYPE_CHECKING:
    from phr_governance.audit.models import AuditEntry
    from phr_governance.consent.models import ConsentArtifact, ConsentRequest
    from phr_governance.emergency.models import EmergencyAccessConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConsentBackend(ABC):
    """
    Durable storage for consent requests and artifacts.

    The core defines the schema; implementations only persist it. Any
    failure to reach the store must surface as StorageUnavailableError.
    """

    @abstractmethod
    def save_request(self, request: "ConsentRequest") -> None:
        """Insert or replace a request."""

    @abstractmethod
    def load_request(self, request_id: str) -> "ConsentRequest | None":
        """Get request by ID."""

    @abstractmethod
    def iter_requests(self) -> Iterable["ConsentRequest"]:
        """All requests in insertion order."""

    @abstractmethod
    def save_artifact(self, artifact: "ConsentArtifact") -> None:
        """Insert or replace an artifact."""

    @abstractmethod
    def load_artifact(self, artifact_id: str) -> "ConsentArtifact | None":
        """Get artifact by ID."""

    @abstractmethod
    def iter_artifacts(self) -> Iterable["ConsentArtifact"]:
        """All artifacts in insertion order."""

    @abstractmethod
    def delete_artifact(self, artifact_id: str) -> None:
        """Remove an artifact. Only used to undo a half-written transition."""

    def save_transition(self, request: "ConsentRequest", artifact: "ConsentArtifact") -> None:
        """
        Persist a request and its artifact as one unit.

        Backends with native transactions should override this. The default
        writes the artifact first and puts the previous artifact back if the
        request write fails, so neither record is left half-transitioned.
        """
        previous = self.load_artifact(artifact.id)
        self.save_artifact(artifact)
        try:
            self.save_request(request)
        except Exception:
            if previous is None:
                self.delete_artifact(artifact.id)
            else:
                self.save_artifact(previous)
            raise

    def find_artifact_by_consent(self, consent_id: str) -> "ConsentArtifact | None":
        for artifact in self.iter_artifacts():
            if artifact.consent_id == consent_id:
                return artifact
        return None


class EmergencyBackend(ABC):
    """Storage for the per-patient emergency access configuration."""

    @abstractmethod
    def load_config(self, patient_id: str) -> "EmergencyAccessConfig | None":
        pass

    @abstractmethod
    def save_config(self, config: "EmergencyAccessConfig") -> None:
        pass


class AuditBackend(ABC):
    """Append-only audit storage. No update or delete operations exist."""

    @abstractmethod
    def append(self, entry: "AuditEntry") -> None:
        pass

    @abstractmethod
    def append_many(self, entries: list["AuditEntry"]) -> None:
        """Store a batch of entries in one write: all of them or none."""

    @abstractmethod
    def entries(self) -> list["AuditEntry"]:
        """All entries in sequence order."""

    def last(self) -> "AuditEntry | None":
        entries = self.entries()
        return entries[-1] if entries else None


def call_backend(fn: Callable[..., T], *args, entity_id: str | None = None) -> T:
    """Run a backend call, surfacing any infrastructure failure as StorageUnavailableError."""
    try:
        return fn(*args)
    except GovernanceError:
        raise
    except Exception as e:
        logger.error("Storage failure", operation=getattr(fn, "__name__", repr(fn)),
                     entity_id=entity_id, error=str(e))
        raise StorageUnavailableError(f"Storage unavailable: {e}", entity_id=entity_id) from e
