"""Consent Lifecycle - state machine for consent requests and artifacts"""
from dataclasses import replace
from datetime import datetime
import uuid
import structlog

from phr_governance.audit.log import AuditLog
from phr_governance.audit.models import ActorType, AuditAction
from phr_governance.clock import Clock, SystemClock, ensure_utc
from phr_governance.consent.models import (
    AccessScope, ArtifactStatus, ConsentArtifact, ConsentRequest, ConsentStatus,
    DenialRecord, GranularDataSelection,
)
from phr_governance.consent.store import ConsentStore
from phr_governance.errors import (
    InvalidScopeError, InvalidTransitionError, ValidationError
)

logger = structlog.get_logger(__name__)

PATIENT = "Patient"
SYSTEM = "system"


def narrow_scope(request: ConsentRequest, selection: GranularDataSelection | None) -> AccessScope:
    """
    Intersect a request with an optional selection.

    Raises InvalidScopeError if the selection reaches outside the request
    and ValidationError if it is malformed. Without a selection the whole
    request is granted.
    """
    if selection is None:
        return AccessScope(
            data_types=tuple(request.data_types),
            from_date=request.from_date,
            to_date=request.to_date,
        )

    data_types = tuple(dict.fromkeys(selection.data_types or ()))
    if not data_types:
        raise ValidationError("Please select at least one data type",
                              entity_id=request.id, field="data_types")
    widened = [dt for dt in data_types if dt not in request.data_types]
    if widened:
        raise InvalidScopeError(
            f"Selection adds data types not in the request: {', '.join(widened)}",
            entity_id=request.id, field="data_types",
        )

    from_date, to_date = request.from_date, request.to_date
    if selection.date_range is not None:
        sel_from, sel_to = (ensure_utc(d) for d in selection.date_range)
        if sel_from > sel_to:
            raise ValidationError("Selection date range is inverted",
                                  entity_id=request.id, field="date_range")
        if sel_from < request.from_date or sel_to > request.to_date:
            raise InvalidScopeError(
                "Selection date range extends beyond the requested window",
                entity_id=request.id, field="date_range",
            )
        from_date, to_date = sel_from, sel_to

    return AccessScope(
        data_types=data_types,
        from_date=from_date,
        to_date=to_date,
        excluded_records=tuple(dict.fromkeys(selection.excluded_records)),
        record_ids=tuple(dict.fromkeys(selection.record_ids)),
        include_sensitive=selection.include_sensitive,
    )


class ConsentLifecycle:
    """
    Enforces the legal consent transitions.

    pending -> approved | denied | expired
    approved -> revoked | expired

    denied, revoked and expired are terminal. Every successful transition
    appends exactly one audit entry before the new state is committed; a
    rejected call mutates nothing and appends nothing.
    """

    def __init__(self, store: ConsentStore, audit: AuditLog, clock: Clock | None = None):
        self._store = store
        self._audit = audit
        self._clock = clock or SystemClock()

    def submit(self, request: ConsentRequest, actor: str | None = None,
               actor_type: ActorType = ActorType.PROVIDER) -> ConsentRequest:
        """Store an inbound request as pending and record its creation."""
        prepared = self._store.validate_new(request)
        with self._store.locks.hold(prepared.id):
            if self._store.exists(prepared.id):
                raise ValidationError(f"Consent request {prepared.id} already exists",
                                      entity_id=prepared.id, field="id")
            self._audit.append(
                consent_id=prepared.id,
                action=AuditAction.CREATED,
                actor=actor or prepared.requester_name,
                actor_type=actor_type,
                details=f"Consent request received from {prepared.requester_name}",
            )
            stored = self._store.create(prepared)
        return stored

    def approve(self, request_id: str, selection: GranularDataSelection | None = None,
                actor: str = PATIENT, actor_type: ActorType = ActorType.PATIENT) -> ConsentArtifact:
        """Approve a pending request, optionally narrowed, creating its single artifact."""
        with self._store.locks.hold(request_id):
            request = self._store.get(request_id)
            self._require_pending(request, "approve")
            now = self._clock.now()
            if request.expiry_date < now:
                raise InvalidTransitionError(
                    f"Consent request {request_id} expired before approval",
                    entity_id=request_id, field="expiry_date",
                )

            scope = narrow_scope(request, selection)
            artifact = ConsentArtifact(
                id=f"cons-art-{uuid.uuid4().hex[:12]}",
                consent_id=request.id,
                status=ArtifactStatus.ACTIVE,
                granted_date=now,
                expiry_date=request.expiry_date,
                purpose=request.purpose,
                requester_name=request.requester_name,
                scope=scope,
            )

            if selection is None:
                details = f"Consent approved for {request.purpose.value} purpose"
            else:
                details = (
                    f"Approved with granular selection: {len(scope.data_types)} data types, "
                    f"{len(scope.excluded_records)} excluded records"
                )
            self._audit.append(
                consent_id=request.id,
                action=AuditAction.APPROVED,
                actor=actor,
                actor_type=actor_type,
                details=details,
                timestamp=now,
            )
            self._store.save_transition(replace(request, status=ConsentStatus.APPROVED), artifact)

        logger.info("Consent approved", consent_id=request_id, artifact_id=artifact.id,
                    data_types=list(scope.data_types), narrowed=selection is not None)
        return artifact

    def deny(self, request_id: str, reason: str, actor: str = PATIENT,
             actor_type: ActorType = ActorType.PATIENT) -> DenialRecord:
        """Deny a pending request. No artifact is created."""
        with self._store.locks.hold(request_id):
            request = self._store.get(request_id)
            self._require_pending(request, "deny")
            now = self._clock.now()
            self._audit.append(
                consent_id=request.id,
                action=AuditAction.DENIED,
                actor=actor,
                actor_type=actor_type,
                details=reason,
                timestamp=now,
            )
            self._store.save_request(replace(request, status=ConsentStatus.DENIED))

        logger.info("Consent denied", consent_id=request_id)
        return DenialRecord(consent_id=request_id, reason=reason, denied_at=now, actor=actor)

    def revoke(self, artifact_id: str, actor: str = PATIENT,
               actor_type: ActorType = ActorType.PATIENT) -> ConsentArtifact:
        """Revoke an active artifact immediately; its request follows."""
        consent_id = self._store.get_artifact(artifact_id).consent_id
        with self._store.locks.hold(consent_id):
            artifact = self._store.get_artifact(artifact_id)
            if artifact.status != ArtifactStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Cannot revoke consent artifact {artifact_id}: it is {artifact.status.value}",
                    entity_id=artifact_id,
                )
            request = self._store.get(consent_id)
            now = self._clock.now()
            revoked = replace(artifact, status=ArtifactStatus.REVOKED)
            self._audit.append(
                consent_id=consent_id,
                action=AuditAction.REVOKED,
                actor=actor,
                actor_type=actor_type,
                details=f"Consent artifact {artifact_id} revoked",
                timestamp=now,
            )
            self._store.save_transition(replace(request, status=ConsentStatus.REVOKED), revoked)

        logger.info("Consent revoked", consent_id=consent_id, artifact_id=artifact_id)
        return revoked

    def expire_sweep(self, now: datetime | None = None) -> list[str]:
        """
        Expire active artifacts and pending requests past their expiry date.

        Idempotent: each record is re-read under its lock and skipped unless
        it is still in an expirable state, so a repeated or interrupted
        sweep neither double-transitions nor double-audits.
        """
        now = ensure_utc(now) if now else self._clock.now()
        expired: list[str] = []

        for artifact in self._store.list_artifacts(ArtifactStatus.ACTIVE):
            if artifact.expiry_date < now and self._expire_artifact(artifact.id, now):
                expired.append(artifact.consent_id)

        for request in self._store.list_by_status(ConsentStatus.PENDING):
            if request.expiry_date < now and self._expire_pending(request.id, now):
                expired.append(request.id)

        if expired:
            logger.info("Consent expiry sweep", expired=len(expired), now=now.isoformat())
        return expired

    def _expire_artifact(self, artifact_id: str, now: datetime) -> bool:
        consent_id = self._store.get_artifact(artifact_id).consent_id
        with self._store.locks.hold(consent_id):
            artifact = self._store.get_artifact(artifact_id)
            if artifact.status != ArtifactStatus.ACTIVE or not artifact.expiry_date < now:
                return False
            request = self._store.get(consent_id)
            self._audit.append(
                consent_id=consent_id,
                action=AuditAction.EXPIRED,
                actor=SYSTEM,
                actor_type=ActorType.SYSTEM,
                details=f"Consent artifact {artifact_id} expired",
                timestamp=now,
            )
            if request.status == ConsentStatus.APPROVED:
                request = replace(request, status=ConsentStatus.EXPIRED)
            self._store.save_transition(request, replace(artifact, status=ArtifactStatus.EXPIRED))
        return True

    def _expire_pending(self, request_id: str, now: datetime) -> bool:
        with self._store.locks.hold(request_id):
            request = self._store.get(request_id)
            if request.status != ConsentStatus.PENDING or not request.expiry_date < now:
                return False
            self._audit.append(
                consent_id=request_id,
                action=AuditAction.EXPIRED,
                actor=SYSTEM,
                actor_type=ActorType.SYSTEM,
                details="Pending consent request expired without a decision",
                timestamp=now,
            )
            self._store.save_request(replace(request, status=ConsentStatus.EXPIRED))
        return True

    def _require_pending(self, request: ConsentRequest, operation: str) -> None:
        if request.status != ConsentStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot {operation} consent request {request.id}: it is {request.status.value}",
                entity_id=request.id, field="status",
            )
