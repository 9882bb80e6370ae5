"""
Consent Service

Single entry point for UI/API collaborators. Wires the consent store,
lifecycle, risk assessor, templates and emergency controller to one shared
audit log; every collaborator is injected.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable
import structlog

from phr_governance.audit.log import AuditLog
from phr_governance.audit.models import ActorType, AuditAction, AuditEntry, AuditFilter, IntegrityReport
from phr_governance.clock import Clock, SystemClock, ensure_utc
from phr_governance.config import GovernanceSettings, get_settings
from phr_governance.consent.lifecycle import PATIENT, ConsentLifecycle
from phr_governance.consent.models import (
    ArtifactStatus, ConsentArtifact, ConsentRequest, ConsentStatus, Decision,
    DenialRecord, GranularDataSelection, RiskWarning,
)
from phr_governance.consent.risk import RiskAssessor, RiskPolicy
from phr_governance.consent.store import ConsentStore
from phr_governance.consent.templates import ConsentTemplate, TemplateRegistry
from phr_governance.emergency.controller import EmergencyAccessController
from phr_governance.emergency.models import EmergencyAccessConfig, EmergencyContact
from phr_governance.errors import ValidationError
from phr_governance.identity import ConsentHistoryDirectory, RequesterDirectory
from phr_governance.storage.base import AuditBackend, ConsentBackend, EmergencyBackend
from phr_governance.storage.memory import (
    InMemoryAuditBackend, InMemoryConsentBackend, InMemoryEmergencyBackend
)

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    consents: list[str]
    emergency_contacts: list[str]

    @property
    def total(self) -> int:
        return len(self.consents) + len(self.emergency_contacts)


class ConsentService:
    """
    Consent and emergency-access operations for one patient.

    Usage:
        service = ConsentService.in_memory(patient_id="patient-1")
        service.submit_consent_request(request)
        warning = service.assess_risk(request.id)
        artifact = service.decide(request.id, Decision.APPROVE)
    """

    def __init__(
        self,
        patient_id: str,
        consent_backend: ConsentBackend,
        emergency_backend: EmergencyBackend,
        audit_backend: AuditBackend,
        clock: Clock | None = None,
        directory: RequesterDirectory | None = None,
        risk_policy: RiskPolicy | None = None,
        settings: GovernanceSettings | None = None,
    ):
        settings = settings or get_settings()
        self.patient_id = patient_id
        self.clock = clock or SystemClock()
        self.settings = settings

        self.audit = AuditLog(audit_backend, self.clock)
        self.store = ConsentStore(consent_backend, self.audit, self.clock)
        self.lifecycle = ConsentLifecycle(self.store, self.audit, self.clock)
        self.risk = RiskAssessor(risk_policy or RiskPolicy.from_settings(settings))
        self.templates = TemplateRegistry(self.clock)
        self.directory = directory or ConsentHistoryDirectory(self.store)
        self.emergency = EmergencyAccessController(
            emergency_backend,
            self.audit,
            patient_id,
            clock=self.clock,
            default_expiry_hours=settings.default_expiry_hours,
        )

    @classmethod
    def in_memory(cls, patient_id: str, **kwargs) -> "ConsentService":
        """Service backed by in-memory storage (tests, local development)."""
        return cls(
            patient_id,
            InMemoryConsentBackend(),
            InMemoryEmergencyBackend(),
            InMemoryAuditBackend(),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def submit_consent_request(self, request: ConsentRequest,
                               actor: str | None = None) -> ConsentRequest:
        return self.lifecycle.submit(request, actor=actor)

    def assess_risk(self, request_id: str) -> RiskWarning:
        """Advisory risk classification. Never changes state."""
        request = self.store.get(request_id)
        history = self.directory.get_history(request.requester_id, exclude_id=request.id)
        warning = self.risk.assess(request, history, self.clock.now())
        logger.info("Consent risk assessed", consent_id=request_id, level=warning.level.value)
        return warning

    def decide(
        self,
        request_id: str,
        decision: Decision | str,
        selection: GranularDataSelection | None = None,
        reason: str | None = None,
        template_id: str | None = None,
        actor: str = PATIENT,
    ) -> ConsentArtifact | DenialRecord:
        """
        Apply the patient's decision to a pending request.

        Approvals may be narrowed by an explicit selection or by a template,
        not both. Denials require a reason.
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Invalid decision {decision!r}",
                                  entity_id=request_id, field="decision")

        if decision == Decision.DENY:
            if selection is not None or template_id is not None:
                raise ValidationError("A denial cannot carry a selection or template",
                                      entity_id=request_id, field="selection")
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to deny a request",
                                      entity_id=request_id, field="reason")
            return self.lifecycle.deny(request_id, reason.strip(), actor=actor)

        if template_id is not None:
            if selection is not None:
                raise ValidationError("Provide either a selection or a template, not both",
                                      entity_id=request_id, field="template_id")
            selection = self.templates.selection_for(template_id, self.store.get(request_id))

        artifact = self.lifecycle.approve(request_id, selection, actor=actor)
        if template_id is not None:
            self.templates.mark_used(template_id)
        return artifact

    def revoke_consent(self, artifact_id: str, actor: str = PATIENT) -> ConsentArtifact:
        return self.lifecycle.revoke(artifact_id, actor=actor)

    def record_access(self, artifact_id: str, actor: str,
                      data_accessed: Iterable[str] = (),
                      ip_address: str | None = None,
                      device_info: str | None = None) -> ConsentArtifact:
        return self.store.record_access(
            artifact_id,
            actor,
            actor_type=ActorType.PROVIDER,
            data_accessed=data_accessed,
            ip_address=ip_address,
            device_info=device_info,
        )

    def get_request(self, request_id: str) -> ConsentRequest:
        return self.store.get(request_id)

    def list_requests(self, status: ConsentStatus | str | None = None) -> list[ConsentRequest]:
        if status is None:
            return self.store.list_requests()
        return self.store.list_by_status(status)

    def get_artifact(self, artifact_id: str) -> ConsentArtifact:
        return self.store.get_artifact(artifact_id)

    def list_artifacts(self, status: ArtifactStatus | str | None = None) -> list[ConsentArtifact]:
        return self.store.list_artifacts(status)

    def list_expiring_consents(self, days: int = 7) -> list[ConsentArtifact]:
        return self.store.list_expiring(days)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(self, name: str, purpose: str, data_types: list[str],
                        default_duration_days: int, **options: Any) -> ConsentTemplate:
        return self.templates.create(name, purpose, data_types, default_duration_days, **options)

    def list_templates(self) -> list[ConsentTemplate]:
        return self.templates.list_templates()

    def delete_template(self, template_id: str) -> None:
        self.templates.delete(template_id)

    def suggest_templates(self, request_id: str) -> list[ConsentTemplate]:
        return self.templates.matching(self.store.get(request_id))

    # ------------------------------------------------------------------
    # Emergency access
    # ------------------------------------------------------------------

    def get_emergency_config(self) -> EmergencyAccessConfig:
        return self.emergency.get_config()

    def configure_emergency_access(self, actor: str = PATIENT, **updates: Any) -> EmergencyAccessConfig:
        return self.emergency.configure(actor=actor, **updates)

    def add_emergency_contact(self, contact: EmergencyContact) -> EmergencyContact:
        return self.emergency.add_contact(contact)

    def remove_emergency_contact(self, contact_id: str) -> None:
        self.emergency.remove_contact(contact_id)

    def grant_emergency_access(self, contact_id: str, reason: str,
                               otp_verified: bool = False) -> EmergencyContact:
        return self.emergency.grant_access(contact_id, reason, otp_verified=otp_verified)

    def revoke_emergency_access(self, contact_id: str) -> EmergencyContact:
        return self.emergency.revoke_access(contact_id)

    def record_emergency_access(self, contact_id: str, data_accessed: Iterable[str] = (),
                                ip_address: str | None = None,
                                device_info: str | None = None) -> None:
        self.emergency.record_access(contact_id, data_accessed,
                                     ip_address=ip_address, device_info=device_info)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def get_audit_trail(self, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        return self.audit.query(audit_filter)

    def verify_audit_trail(self) -> IntegrityReport:
        return self.audit.verify()

    def export_audit_trail(self, audit_filter: AuditFilter | None = None) -> str:
        return self.audit.export(audit_filter)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def run_expiry_sweeps(self, now: datetime | None = None) -> SweepResult:
        """Run both expiry sweeps with one ``now``. Safe to re-run after a failure."""
        now = ensure_utc(now) if now else self.clock.now()
        result = SweepResult(
            consents=self.lifecycle.expire_sweep(now),
            emergency_contacts=self.emergency.expiry_sweep(now),
        )
        if result.total:
            logger.info("Expiry sweeps completed", consents=len(result.consents),
                        emergency_contacts=len(result.emergency_contacts))
        return result

    def audit_filter(self, consent_id: str | None = None, action: AuditAction | str | None = None,
                     actor_type: ActorType | str | None = None,
                     start_time: datetime | None = None, end_time: datetime | None = None,
                     limit: int | None = None) -> AuditFilter:
        """Build a validated AuditFilter from loose values."""
        try:
            action = AuditAction(action) if action is not None else None
            actor_type = ActorType(actor_type) if actor_type is not None else None
        except ValueError as e:
            raise ValidationError(f"Invalid audit filter: {e}", field="action")
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be positive", field="limit")
        return AuditFilter(
            consent_id=consent_id,
            action=action,
            actor_type=actor_type,
            start_time=ensure_utc(start_time) if start_time else None,
            end_time=ensure_utc(end_time) if end_time else None,
            limit=limit,
        )
