"""Consent lifecycle, storage and risk assessment"""
from phr_governance.consent.lifecycle import ConsentLifecycle, narrow_scope
from phr_governance.consent.models import (
    AccessScope, ArtifactStatus, ConsentArtifact, ConsentPurpose, ConsentRequest,
    ConsentStatus, Decision, DenialRecord, GranularDataSelection, HealthRecordRef,
    RequesterHistory, RequesterType, RiskLevel, RiskWarning,
)
from phr_governance.consent.risk import RiskAssessor, RiskPolicy
from phr_governance.consent.store import ConsentStore
from phr_governance.consent.templates import ConsentTemplate, TemplateRegistry

__all__ = [
    "ConsentLifecycle", "narrow_scope", "ConsentStore", "RiskAssessor", "RiskPolicy",
    "ConsentTemplate", "TemplateRegistry",
    "AccessScope", "ArtifactStatus", "ConsentArtifact", "ConsentPurpose",
    "ConsentRequest", "ConsentStatus", "Decision", "DenialRecord",
    "GranularDataSelection", "HealthRecordRef", "RequesterHistory",
    "RequesterType", "RiskLevel", "RiskWarning",
]
