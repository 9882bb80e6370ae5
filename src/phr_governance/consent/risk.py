"""Consent Risk Assessment - advisory classification of pending requests"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from phr_governance.config import GovernanceSettings, get_settings
from phr_governance.consent.models import (
    ConsentPurpose, ConsentRequest, RequesterHistory, RiskLevel, RiskWarning
)
from phr_governance.errors import ValidationError


_MESSAGES = {
    RiskLevel.CRITICAL: "Critical risk - sensitive records requested for research",
    RiskLevel.HIGH: "High risk - Review carefully before approval",
    RiskLevel.MEDIUM: "Medium risk - Please review the details",
    RiskLevel.LOW: "This consent request appears safe",
}


@dataclass(frozen=True)
class RiskPolicy:
    """Thresholds for the heuristics. Policy, not contract."""
    window_days: int = 180
    expiry_horizon_days: int = 365
    sensitive_data_types: frozenset[str] = field(default_factory=frozenset)
    all_records_tag: str = "All Records"

    @classmethod
    def from_settings(cls, settings: GovernanceSettings | None = None) -> "RiskPolicy":
        settings = settings or get_settings()
        return cls(
            window_days=settings.risk_window_days,
            expiry_horizon_days=settings.risk_expiry_horizon_days,
            sensitive_data_types=frozenset(settings.sensitive_data_types),
            all_records_tag=settings.all_records_tag,
        )


class RiskAssessor:
    """
    Classifies a pending consent request before the patient decides.

    Pure and deterministic given (request, history, now). Heuristics are
    checked in severity order: the first match sets the level, every
    match contributes its reasons. The result never blocks a transition.
    """

    def __init__(self, policy: RiskPolicy | None = None):
        self.policy = policy or RiskPolicy.from_settings()

    def assess(self, request: ConsentRequest, history: RequesterHistory,
               now: datetime) -> RiskWarning:
        try:
            purpose = ConsentPurpose(request.purpose)
        except ValueError:
            raise ValidationError(f"Invalid purpose {request.purpose!r}",
                                  entity_id=request.id, field="purpose")
        levels: list[RiskLevel] = []
        reasons: list[str] = []
        recommendations: list[str] = []

        sensitive = [dt for dt in request.data_types if dt in self.policy.sensitive_data_types]

        # critical
        if purpose == ConsentPurpose.RESEARCH and sensitive:
            levels.append(RiskLevel.CRITICAL)
            reasons.append(f"Sensitive records requested for research: {', '.join(sensitive)}")
            recommendations.append("Exclude sensitive record types or deny the request")

        # high
        if history.past_revocations >= 1:
            levels.append(RiskLevel.HIGH)
            reasons.append(
                f"You have revoked {history.past_revocations} previous consent(s) from this requester"
            )
            recommendations.append("Check why earlier access to this requester was revoked")
        if (self.policy.all_records_tag in request.data_types
                and purpose != ConsentPurpose.TREATMENT):
            levels.append(RiskLevel.HIGH)
            reasons.append(f"Requests all records for {purpose.value}")
            recommendations.append("Verify necessity of all requested data types")

        # medium
        window = request.to_date - request.from_date
        if window > timedelta(days=self.policy.window_days):
            levels.append(RiskLevel.MEDIUM)
            reasons.append(f"Long data window ({window.days} days)")
            recommendations.append("Narrow the date range with a granular selection")
        horizon = request.expiry_date - now
        if horizon > timedelta(days=self.policy.expiry_horizon_days):
            levels.append(RiskLevel.MEDIUM)
            reasons.append(f"Long access duration ({horizon.days} days)")
            recommendations.append("Consider shorter consent duration")

        if not levels:
            return RiskWarning(
                level=RiskLevel.LOW,
                message=_MESSAGES[RiskLevel.LOW],
                reasons=["Standard data types", "Reasonable duration", "No prior revocations"],
                recommendations=["Review and approve if expected"],
            )

        level = levels[0]
        return RiskWarning(
            level=level,
            message=_MESSAGES[level],
            reasons=reasons,
            recommendations=recommendations,
        )
