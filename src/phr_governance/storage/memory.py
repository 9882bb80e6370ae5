"""In-memory storage backends for tests and local development"""
import copy

from phr_governance.audit.models import AuditEntry
from phr_governance.consent.models import ConsentArtifact, ConsentRequest
from phr_governance.emergency.models import EmergencyAccessConfig
from phr_governance.storage.base import AuditBackend, ConsentBackend, EmergencyBackend


class InMemoryConsentBackend(ConsentBackend):
    """Dict-backed consent storage. Hands out copies so callers cannot mutate stored state."""

    def __init__(self):
        self._requests: dict[str, ConsentRequest] = {}
        self._artifacts: dict[str, ConsentArtifact] = {}

    def save_request(self, request: ConsentRequest) -> None:
        self._requests[request.id] = copy.deepcopy(request)

    def load_request(self, request_id: str) -> ConsentRequest | None:
        request = self._requests.get(request_id)
        return copy.deepcopy(request) if request else None

    def iter_requests(self) -> list[ConsentRequest]:
        return [copy.deepcopy(r) for r in self._requests.values()]

    def save_artifact(self, artifact: ConsentArtifact) -> None:
        self._artifacts[artifact.id] = copy.deepcopy(artifact)

    def load_artifact(self, artifact_id: str) -> ConsentArtifact | None:
        artifact = self._artifacts.get(artifact_id)
        return copy.deepcopy(artifact) if artifact else None

    def iter_artifacts(self) -> list[ConsentArtifact]:
        return [copy.deepcopy(a) for a in self._artifacts.values()]

    def delete_artifact(self, artifact_id: str) -> None:
        self._artifacts.pop(artifact_id, None)


class InMemoryEmergencyBackend(EmergencyBackend):
    def __init__(self):
        self._configs: dict[str, EmergencyAccessConfig] = {}

    def load_config(self, patient_id: str) -> EmergencyAccessConfig | None:
        config = self._configs.get(patient_id)
        return copy.deepcopy(config) if config else None

    def save_config(self, config: EmergencyAccessConfig) -> None:
        self._configs[config.patient_id] = copy.deepcopy(config)


class InMemoryAuditBackend(AuditBackend):
    def __init__(self):
        self._entries: list[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def append_many(self, entries: list[AuditEntry]) -> None:
        self._entries.extend(entries)

    def last(self) -> AuditEntry | None:
        return self._entries[-1] if self._entries else None

    def entries(self) -> list[AuditEntry]:
        return list(self._entries)
