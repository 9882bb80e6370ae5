"""Consent Data Models - ABDM consent request / artifact aligned"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RequesterType(str, Enum):
    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    LAB = "lab"
    INSURANCE = "insurance"


class ConsentPurpose(str, Enum):
    TREATMENT = "treatment"
    INSURANCE = "insurance"
    RESEARCH = "research"
    EMERGENCY = "emergency"


class ConsentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ArtifactStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Decision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


TERMINAL_REQUEST_STATES = frozenset(
    {ConsentStatus.DENIED, ConsentStatus.REVOKED, ConsentStatus.EXPIRED}
)


@dataclass
class ConsentRequest:
    """One requester-initiated ask for the patient's records."""
    id: str
    requester_id: str
    requester_name: str
    requester_type: RequesterType
    purpose: ConsentPurpose
    data_types: tuple[str, ...]
    from_date: datetime
    to_date: datetime
    expiry_date: datetime  # when granted access itself lapses
    status: ConsentStatus = ConsentStatus.PENDING
    request_date: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATES


@dataclass
class GranularDataSelection:
    """Narrowing of a request chosen at approval time."""
    data_types: list[str]
    date_range: tuple[datetime, datetime] | None = None
    excluded_records: list[str] = field(default_factory=list)
    record_ids: list[str] = field(default_factory=list)  # empty = every record in scope
    include_sensitive: bool = False


@dataclass(frozen=True)
class HealthRecordRef:
    """Minimal view of a stored health record, enough to test it against a grant."""
    id: str
    data_type: str
    date: datetime
    sensitive: bool = False


@dataclass
class AccessScope:
    """Effective grant: the intersection of a request and an optional selection."""
    data_types: tuple[str, ...]
    from_date: datetime
    to_date: datetime
    excluded_records: tuple[str, ...] = ()
    record_ids: tuple[str, ...] = ()
    include_sensitive: bool = True

    def covers(self, record: HealthRecordRef) -> bool:
        if record.data_type not in self.data_types:
            return False
        if not (self.from_date <= record.date <= self.to_date):
            return False
        if record.id in self.excluded_records:
            return False
        if self.record_ids and record.id not in self.record_ids:
            return False
        if record.sensitive and not self.include_sensitive:
            return False
        return True


@dataclass
class ConsentArtifact:
    """Materialized grant produced by approving a request."""
    id: str
    consent_id: str
    status: ArtifactStatus
    granted_date: datetime
    expiry_date: datetime
    purpose: ConsentPurpose
    requester_name: str
    scope: AccessScope
    access_count: int = 0
    last_accessed_date: datetime | None = None

    @property
    def data_types(self) -> tuple[str, ...]:
        return self.scope.data_types


@dataclass
class DenialRecord:
    consent_id: str
    reason: str
    denied_at: datetime
    actor: str


@dataclass
class RiskWarning:
    level: RiskLevel
    message: str
    reasons: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class RequesterHistory:
    """Read-only view of what a requester has asked for before."""
    requester_id: str
    past_request_count: int = 0
    past_revocations: int = 0
    purposes: list[ConsentPurpose] = field(default_factory=list)
