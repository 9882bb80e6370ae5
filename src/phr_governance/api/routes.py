"""
Consent & Emergency Access API Routes

Thin HTTP adapter over ConsentService. Handlers are plain ``def`` so the
blocking core runs in FastAPI's threadpool.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
import structlog

from phr_governance.consent.models import (
    ConsentArtifact, ConsentRequest, DenialRecord, GranularDataSelection,
)
from phr_governance.emergency.models import EmergencyContact
from phr_governance.errors import GovernanceError
from phr_governance.service import ConsentService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/consent", tags=["Consent"])
emergency_router = APIRouter(prefix="/emergency", tags=["Emergency Access"])
audit_router = APIRouter(prefix="/audit", tags=["Audit"])

ERROR_STATUS = {
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_scope": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "not_active": status.HTTP_409_CONFLICT,
    "disabled": status.HTTP_403_FORBIDDEN,
    "contact_not_eligible": status.HTTP_403_FORBIDDEN,
    "storage_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
    """Map domain errors to HTTP responses carrying the structured error body."""
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("Governance request failed", path=request.url.path, **exc.to_dict())
    else:
        logger.info("Governance request rejected", path=request.url.path,
                    kind=exc.kind, entity_id=exc.entity_id)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def get_service(request: Request) -> ConsentService:
    return request.app.state.service


# =============================================================================
# Request / Response Models
# =============================================================================

class ConsentRequestIn(BaseModel):
    """Inbound consent request from a requester."""
    id: str
    requester_id: str
    requester_name: str
    requester_type: str
    purpose: str
    data_types: list[str]
    from_date: datetime
    to_date: datetime
    expiry_date: datetime


class SelectionIn(BaseModel):
    data_types: list[str]
    date_range: tuple[datetime, datetime] | None = None
    excluded_records: list[str] = Field(default_factory=list)
    record_ids: list[str] = Field(default_factory=list)
    include_sensitive: bool = False


class DecisionIn(BaseModel):
    decision: Literal["approve", "deny"]
    selection: SelectionIn | None = None
    reason: str | None = None
    template_id: str | None = None


class AccessIn(BaseModel):
    actor: str
    data_accessed: list[str] = Field(default_factory=list)
    ip_address: str | None = None
    device_info: str | None = None


class TemplateIn(BaseModel):
    name: str
    purpose: str
    data_types: list[str]
    default_duration_days: int
    description: str = ""
    granular_selection: bool = False
    include_sensitive: bool = False


class RiskWarningResponse(BaseModel):
    level: str
    message: str
    reasons: list[str]
    recommendations: list[str]


class EmergencyConfigUpdate(BaseModel):
    enabled: bool | None = None
    access_level: Literal["basic", "full"] | None = None
    auto_expiry: bool | None = None
    expiry_hours: int | None = None
    requires_otp: bool | None = None
    data_types: list[str] | None = None


class ContactIn(BaseModel):
    id: str
    name: str
    relationship: str
    phone: str
    email: str | None = None
    can_access_emergency_data: bool = False


class GrantIn(BaseModel):
    reason: str
    otp_verified: bool = False


class EmergencyAccessIn(BaseModel):
    data_accessed: list[str] = Field(default_factory=list)
    ip_address: str | None = None
    device_info: str | None = None


class AuditEntryResponse(BaseModel):
    id: str
    sequence: int
    consent_id: str
    action: str
    timestamp: datetime
    actor: str
    actor_type: str
    details: str
    data_accessed: list[str]
    ip_address: str | None
    device_info: str | None
    prev_hash: str
    hash: str


class IntegrityResponse(BaseModel):
    intact: bool
    total: int
    broken_at: int | None
    issue: str | None
    checked_at: datetime | None


def _to_selection(selection: SelectionIn | None) -> GranularDataSelection | None:
    if selection is None:
        return None
    return GranularDataSelection(**selection.model_dump())


def _dump(obj: Any) -> dict[str, Any]:
    return asdict(obj)


# =============================================================================
# Consent
# =============================================================================

@router.post("/requests", status_code=status.HTTP_201_CREATED)
def submit_consent_request(body: ConsentRequestIn,
                           service: ConsentService = Depends(get_service)):
    """Submit an inbound consent request; it is stored as pending."""
    stored = service.submit_consent_request(ConsentRequest(**body.model_dump()))
    return _dump(stored)


@router.get("/requests")
def list_requests(status_filter: str | None = Query(None, alias="status"),
                  service: ConsentService = Depends(get_service)):
    return [_dump(r) for r in service.list_requests(status_filter)]


@router.get("/requests/{request_id}")
def get_request(request_id: str, service: ConsentService = Depends(get_service)):
    return _dump(service.get_request(request_id))


@router.get("/requests/{request_id}/risk", response_model=RiskWarningResponse)
def assess_risk(request_id: str, service: ConsentService = Depends(get_service)):
    """Advisory risk classification for a request."""
    warning = service.assess_risk(request_id)
    return RiskWarningResponse(
        level=warning.level.value,
        message=warning.message,
        reasons=warning.reasons,
        recommendations=warning.recommendations,
    )


@router.get("/requests/{request_id}/templates")
def suggest_templates(request_id: str, service: ConsentService = Depends(get_service)):
    return [_dump(t) for t in service.suggest_templates(request_id)]


@router.post("/requests/{request_id}/decision")
def decide(request_id: str, body: DecisionIn, service: ConsentService = Depends(get_service)):
    """Approve (optionally narrowed) or deny a pending request."""
    result = service.decide(
        request_id,
        body.decision,
        selection=_to_selection(body.selection),
        reason=body.reason,
        template_id=body.template_id,
    )
    if isinstance(result, DenialRecord):
        return {"decision": "deny", "denial": _dump(result)}
    return {"decision": "approve", "artifact": _dump(result)}


@router.get("/artifacts")
def list_artifacts(status_filter: str | None = Query(None, alias="status"),
                   service: ConsentService = Depends(get_service)):
    return [_dump(a) for a in service.list_artifacts(status_filter)]


@router.get("/artifacts/expiring")
def list_expiring_consents(days: int = Query(7, ge=1, description="Look-ahead window in days"),
                           service: ConsentService = Depends(get_service)):
    """Active consents that expire within the look-ahead window."""
    return [_dump(a) for a in service.list_expiring_consents(days)]


@router.get("/artifacts/{artifact_id}")
def get_artifact(artifact_id: str, service: ConsentService = Depends(get_service)):
    return _dump(service.get_artifact(artifact_id))


@router.post("/artifacts/{artifact_id}/revoke")
def revoke_consent(artifact_id: str, service: ConsentService = Depends(get_service)):
    artifact: ConsentArtifact = service.revoke_consent(artifact_id)
    return _dump(artifact)


@router.post("/artifacts/{artifact_id}/access")
def record_access(artifact_id: str, body: AccessIn,
                  service: ConsentService = Depends(get_service)):
    """Record one read of granted data."""
    artifact = service.record_access(
        artifact_id,
        body.actor,
        data_accessed=body.data_accessed,
        ip_address=body.ip_address,
        device_info=body.device_info,
    )
    return _dump(artifact)


@router.get("/templates")
def list_templates(service: ConsentService = Depends(get_service)):
    return [_dump(t) for t in service.list_templates()]


@router.post("/templates", status_code=status.HTTP_201_CREATED)
def create_template(body: TemplateIn, service: ConsentService = Depends(get_service)):
    options = body.model_dump(exclude={"name", "purpose", "data_types", "default_duration_days"})
    template = service.create_template(
        body.name, body.purpose, body.data_types, body.default_duration_days, **options
    )
    return _dump(template)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(template_id: str, service: ConsentService = Depends(get_service)):
    service.delete_template(template_id)


# =============================================================================
# Emergency access
# =============================================================================

@emergency_router.get("/config")
def get_emergency_config(service: ConsentService = Depends(get_service)):
    return _dump(service.get_emergency_config())


@emergency_router.patch("/config")
def configure_emergency_access(body: EmergencyConfigUpdate,
                               service: ConsentService = Depends(get_service)):
    """Merge partial updates into the emergency access configuration."""
    updates = body.model_dump(exclude_unset=True)
    return _dump(service.configure_emergency_access(**updates))


@emergency_router.post("/contacts", status_code=status.HTTP_201_CREATED)
def add_emergency_contact(body: ContactIn, service: ConsentService = Depends(get_service)):
    return _dump(service.add_emergency_contact(EmergencyContact(**body.model_dump())))


@emergency_router.delete("/contacts/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_emergency_contact(contact_id: str, service: ConsentService = Depends(get_service)):
    service.remove_emergency_contact(contact_id)


@emergency_router.post("/contacts/{contact_id}/grant")
def grant_emergency_access(contact_id: str, body: GrantIn,
                           service: ConsentService = Depends(get_service)):
    """Break-the-glass grant for an eligible contact."""
    contact = service.grant_emergency_access(contact_id, body.reason,
                                             otp_verified=body.otp_verified)
    return _dump(contact)


@emergency_router.post("/contacts/{contact_id}/revoke")
def revoke_emergency_access(contact_id: str, service: ConsentService = Depends(get_service)):
    return _dump(service.revoke_emergency_access(contact_id))


@emergency_router.post("/contacts/{contact_id}/access", status_code=status.HTTP_204_NO_CONTENT)
def record_emergency_access(contact_id: str, body: EmergencyAccessIn,
                            service: ConsentService = Depends(get_service)):
    service.record_emergency_access(
        contact_id,
        body.data_accessed,
        ip_address=body.ip_address,
        device_info=body.device_info,
    )


# =============================================================================
# Audit
# =============================================================================

@audit_router.get("/entries", response_model=list[AuditEntryResponse])
def get_audit_trail(
    consent_id: str | None = Query(None, description="Filter by consent or grant ID"),
    action: str | None = Query(None, description="Filter by action"),
    actor_type: str | None = Query(None, description="Filter by actor type"),
    start_time: datetime | None = Query(None, description="Start time filter"),
    end_time: datetime | None = Query(None, description="End time filter"),
    limit: int | None = Query(None, ge=1, description="Maximum number of records"),
    service: ConsentService = Depends(get_service),
):
    """Query audit entries in sequence order. Read-only."""
    audit_filter = service.audit_filter(consent_id, action, actor_type, start_time, end_time, limit)
    return [e.to_dict() for e in service.get_audit_trail(audit_filter)]


@audit_router.get("/verify", response_model=IntegrityResponse)
def verify_audit_trail(service: ConsentService = Depends(get_service)):
    """Recompute the hash chain and report the first broken index."""
    return _dump(service.verify_audit_trail())


@audit_router.get("/export")
def export_audit_trail(
    consent_id: str | None = Query(None),
    action: str | None = Query(None),
    service: ConsentService = Depends(get_service),
):
    """Compliance export as JSON."""
    audit_filter = service.audit_filter(consent_id=consent_id, action=action)
    return Response(content=service.export_audit_trail(audit_filter), media_type="application/json")
