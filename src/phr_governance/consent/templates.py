"""Consent Templates - reusable narrowing presets for one-tap approval"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import threading
import uuid
import structlog

from phr_governance.clock import Clock, SystemClock
from phr_governance.consent.models import ConsentPurpose, ConsentRequest, GranularDataSelection
from phr_governance.errors import InvalidScopeError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


@dataclass
class ConsentTemplate:
    id: str
    name: str
    purpose: ConsentPurpose
    data_types: tuple[str, ...]
    default_duration_days: int
    description: str = ""
    granular_selection: bool = False
    requires_review: bool = True
    include_sensitive: bool = False
    created_date: datetime | None = None
    usage_count: int = 0


class TemplateRegistry:
    """
    Patient-defined consent templates.

    A template never approves anything on its own; it is turned into a
    GranularDataSelection that the normal approval path validates.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._templates: dict[str, ConsentTemplate] = {}
        self._lock = threading.Lock()

    def create(self, name: str, purpose: ConsentPurpose | str, data_types: list[str],
               default_duration_days: int, **options) -> ConsentTemplate:
        if not name or not name.strip():
            raise ValidationError("Template name is required", field="name")
        try:
            purpose = ConsentPurpose(purpose)
        except ValueError:
            raise ValidationError(f"Invalid purpose {purpose!r}", field="purpose")
        data_types = tuple(dict.fromkeys(dt for dt in data_types if dt))
        if not data_types:
            raise ValidationError("Template needs at least one data type", field="data_types")
        if default_duration_days <= 0:
            raise ValidationError("default_duration_days must be positive",
                                  field="default_duration_days")

        template = ConsentTemplate(
            id=f"tmpl-{uuid.uuid4().hex[:8]}",
            name=name.strip(),
            purpose=purpose,
            data_types=data_types,
            default_duration_days=default_duration_days,
            created_date=self._clock.now(),
            **options,
        )
        with self._lock:
            self._templates[template.id] = template
        logger.info("Consent template created", template_id=template.id, purpose=purpose.value)
        return template

    def get(self, template_id: str) -> ConsentTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Consent template {template_id} not found", entity_id=template_id)
        return template

    def list_templates(self) -> list[ConsentTemplate]:
        return list(self._templates.values())

    def delete(self, template_id: str) -> None:
        with self._lock:
            if self._templates.pop(template_id, None) is None:
                raise NotFoundError(f"Consent template {template_id} not found",
                                    entity_id=template_id)
        logger.info("Consent template deleted", template_id=template_id)

    def matching(self, request: ConsentRequest) -> list[ConsentTemplate]:
        """Templates with the request's purpose that share at least one data type."""
        return [
            t for t in self._templates.values()
            if t.purpose == request.purpose
            and any(dt in request.data_types for dt in t.data_types)
        ]

    def selection_for(self, template_id: str, request: ConsentRequest) -> GranularDataSelection:
        """
        Build the narrowing selection a template implies for a request.

        Data types are intersected with the request, and the date window is
        capped to ``default_duration_days`` counted back from the request's
        ``to_date``.
        """
        template = self.get(template_id)
        if template.purpose != request.purpose:
            raise InvalidScopeError(
                f"Template {template_id} is for {template.purpose.value}, "
                f"request is for {request.purpose.value}",
                entity_id=request.id, field="purpose",
            )
        data_types = [dt for dt in template.data_types if dt in request.data_types]
        if not data_types:
            raise InvalidScopeError(
                f"Template {template_id} shares no data types with request {request.id}",
                entity_id=request.id, field="data_types",
            )
        window_start = max(request.from_date,
                           request.to_date - timedelta(days=template.default_duration_days))
        return GranularDataSelection(
            data_types=data_types,
            date_range=(window_start, request.to_date),
            include_sensitive=template.include_sensitive,
        )

    def mark_used(self, template_id: str) -> ConsentTemplate:
        with self._lock:
            template = self.get(template_id)
            updated = replace(template, usage_count=template.usage_count + 1)
            self._templates[template_id] = updated
        return updated
