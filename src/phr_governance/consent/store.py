"""Consent Record Store - constraint-checked storage, no policy decisions"""
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Iterable
import structlog

from phr_governance.audit.log import AuditLog
from phr_governance.audit.models import ActorType, AuditAction
from phr_governance.clock import Clock, SystemClock, ensure_utc
from phr_governance.consent.models import (
    ArtifactStatus, ConsentArtifact, ConsentPurpose, ConsentRequest,
    ConsentStatus, RequesterType,
)
from phr_governance.errors import NotActiveError, NotFoundError, ValidationError
from phr_governance.locks import KeyedLocks
from phr_governance.storage.base import ConsentBackend, call_backend

logger = structlog.get_logger(__name__)

_REQUIRED_TEXT_FIELDS = ("id", "requester_id", "requester_name")


def _coerce_enum(enum_cls, value: Any, field: str, entity_id: str | None):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field} {value!r}; expected one of: {allowed}",
            entity_id=entity_id, field=field,
        )


def _coerce_datetime(value: Any, field: str, entity_id: str | None) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field} must be a datetime", entity_id=entity_id, field=field)
    return ensure_utc(value)


class ConsentStore:
    """
    Durable storage for consent requests and artifacts.

    Enforces the record invariants (non-empty data types, date ordering,
    unique ids, monotonic access counts). Every mutation of a consent and
    its artifact happens while holding that consent's lock in ``locks``.
    """

    def __init__(self, backend: ConsentBackend, audit: AuditLog,
                 clock: Clock | None = None, locks: KeyedLocks | None = None):
        self._backend = backend
        self._audit = audit
        self._clock = clock or SystemClock()
        self.locks = locks or KeyedLocks()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def validate_new(self, request: ConsentRequest) -> ConsentRequest:
        """Normalise an inbound request and check its invariants. Does not persist."""
        entity_id = getattr(request, "id", None) or None
        for name in _REQUIRED_TEXT_FIELDS:
            value = getattr(request, name, None)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required", entity_id=entity_id, field=name)

        requester_type = _coerce_enum(RequesterType, request.requester_type, "requester_type", entity_id)
        purpose = _coerce_enum(ConsentPurpose, request.purpose, "purpose", entity_id)

        data_types = tuple(dict.fromkeys(
            dt.strip() for dt in (request.data_types or ()) if isinstance(dt, str) and dt.strip()
        ))
        if not data_types:
            raise ValidationError("At least one data type is required",
                                  entity_id=entity_id, field="data_types")

        from_date = _coerce_datetime(request.from_date, "from_date", entity_id)
        to_date = _coerce_datetime(request.to_date, "to_date", entity_id)
        expiry_date = _coerce_datetime(request.expiry_date, "expiry_date", entity_id)
        if from_date > to_date:
            raise ValidationError("from_date must not be after to_date",
                                  entity_id=entity_id, field="from_date")
        if to_date > expiry_date:
            raise ValidationError("to_date must not be after expiry_date",
                                  entity_id=entity_id, field="expiry_date")

        request_date = (
            _coerce_datetime(request.request_date, "request_date", entity_id)
            if request.request_date is not None else self._clock.now()
        )

        return replace(
            request,
            requester_type=requester_type,
            purpose=purpose,
            data_types=data_types,
            from_date=from_date,
            to_date=to_date,
            expiry_date=expiry_date,
            status=ConsentStatus.PENDING,
            request_date=request_date,
        )

    def create(self, request: ConsentRequest) -> ConsentRequest:
        """Store a new request as pending. Rejects duplicates and invalid records."""
        stored = self.validate_new(request)
        if self.exists(stored.id):
            raise ValidationError(f"Consent request {stored.id} already exists",
                                  entity_id=stored.id, field="id")
        call_backend(self._backend.save_request, stored, entity_id=stored.id)
        logger.info("Consent request stored", consent_id=stored.id,
                    requester_id=stored.requester_id, purpose=stored.purpose.value)
        return stored

    def get(self, request_id: str) -> ConsentRequest:
        request = call_backend(self._backend.load_request, request_id, entity_id=request_id)
        if request is None:
            raise NotFoundError(f"Consent request {request_id} not found", entity_id=request_id)
        return request

    def exists(self, request_id: str) -> bool:
        return call_backend(self._backend.load_request, request_id, entity_id=request_id) is not None

    def list_by_status(self, status: ConsentStatus | str) -> list[ConsentRequest]:
        status = _coerce_enum(ConsentStatus, status, "status", None)
        return [r for r in self._all_requests() if r.status == status]

    def list_by_requester(self, requester_id: str) -> list[ConsentRequest]:
        return [r for r in self._all_requests() if r.requester_id == requester_id]

    def list_requests(self) -> list[ConsentRequest]:
        return self._all_requests()

    def save_request(self, request: ConsentRequest) -> None:
        """Persist a lifecycle transition. Caller holds the consent lock."""
        call_backend(self._backend.save_request, request, entity_id=request.id)

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def get_artifact(self, artifact_id: str) -> ConsentArtifact:
        artifact = call_backend(self._backend.load_artifact, artifact_id, entity_id=artifact_id)
        if artifact is None:
            raise NotFoundError(f"Consent artifact {artifact_id} not found", entity_id=artifact_id)
        return artifact

    def artifact_for(self, consent_id: str) -> ConsentArtifact | None:
        return call_backend(self._backend.find_artifact_by_consent, consent_id, entity_id=consent_id)

    def list_artifacts(self, status: ArtifactStatus | str | None = None) -> list[ConsentArtifact]:
        artifacts = list(call_backend(self._backend.iter_artifacts, entity_id=None))
        if status is None:
            return artifacts
        status = _coerce_enum(ArtifactStatus, status, "status", None)
        return [a for a in artifacts if a.status == status]

    def list_expiring(self, days_threshold: int = 7) -> list[ConsentArtifact]:
        """Active artifacts whose expiry falls within the next ``days_threshold`` days."""
        if days_threshold <= 0:
            raise ValidationError("days_threshold must be positive", field="days_threshold")
        now = self._clock.now()
        horizon = now + timedelta(days=days_threshold)
        expiring = [
            a for a in self.list_artifacts(ArtifactStatus.ACTIVE)
            if now <= a.expiry_date <= horizon
        ]
        return sorted(expiring, key=lambda a: a.expiry_date)

    def save_artifact(self, artifact: ConsentArtifact) -> None:
        """Persist a lifecycle transition. Caller holds the consent lock."""
        call_backend(self._backend.save_artifact, artifact, entity_id=artifact.id)

    def save_transition(self, request: ConsentRequest, artifact: ConsentArtifact) -> None:
        """Persist a request and its artifact together. Caller holds the consent lock."""
        call_backend(self._backend.save_transition, request, artifact, entity_id=request.id)

    def record_access(
        self,
        artifact_id: str,
        actor: str,
        actor_type: ActorType = ActorType.PROVIDER,
        data_accessed: Iterable[str] = (),
        ip_address: str | None = None,
        device_info: str | None = None,
    ) -> ConsentArtifact:
        """
        Count one read of granted data.

        The only mutation outside lifecycle transitions. Fails with
        NotFoundError for unknown artifacts and NotActiveError unless the
        artifact is active and unexpired. Emits one ``accessed`` entry.
        """
        consent_id = self.get_artifact(artifact_id).consent_id
        with self.locks.hold(consent_id):
            artifact = self.get_artifact(artifact_id)
            now = self._clock.now()
            if artifact.status != ArtifactStatus.ACTIVE:
                raise NotActiveError(
                    f"Consent artifact {artifact_id} is {artifact.status.value}",
                    entity_id=artifact_id,
                )
            if artifact.expiry_date < now:
                raise NotActiveError(
                    f"Consent artifact {artifact_id} expired at {artifact.expiry_date.isoformat()}",
                    entity_id=artifact_id,
                )

            accessed = tuple(data_accessed)
            updated = replace(
                artifact,
                access_count=artifact.access_count + 1,
                last_accessed_date=now,
            )
            self._audit.append(
                consent_id=consent_id,
                action=AuditAction.ACCESSED,
                actor=actor,
                actor_type=actor_type,
                details=f"Artifact {artifact_id} accessed for {artifact.purpose.value}",
                data_accessed=accessed,
                ip_address=ip_address,
                device_info=device_info,
                timestamp=now,
            )
            self.save_artifact(updated)

        logger.info("Consent artifact accessed", artifact_id=artifact_id,
                    access_count=updated.access_count)
        return updated

    # ------------------------------------------------------------------

    def _all_requests(self) -> list[ConsentRequest]:
        return list(call_backend(self._backend.iter_requests, entity_id=None))
