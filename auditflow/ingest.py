"""Canonical request schemas and normalisation of external payloads.

External callers spell the same field several ways (``start_utc``,
``start_date``, ``startDate``...). Everything is mapped onto one canonical
name here so the rest of the engine only ever sees canonical fields.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from .config import AuditRulesConfig
from .contracts import Gate, StepStatus
from .errors import ValidationFailedError

FIELD_ALIASES: Dict[str, tuple[str, ...]] = {
    "title": ("Title",),
    "engagement_id": ("engagementId", "EngagementId", "EngagementID"),
    "client_id": ("clientId", "ClientId", "ClientID"),
    "domain": ("Domain",),
    "audit_type": ("auditType", "AuditType"),
    "owner_contact_id": ("ownerContactId", "OwnerContactId", "owner_id"),
    "path_id": ("pathId", "PathId", "template_id", "templateId"),
    "start_utc": ("start_date", "startDate", "startUtc", "StartUtc"),
    "notes": ("Notes", "note"),
    "step_id": ("stepId", "StepId"),
    "status": ("Status",),
    "output": ("output_json", "outputJson", "Output"),
    "gate": ("state_gate", "stateGate", "Gate"),
    "required": ("Required", "is_required"),
    "definition_of_done": ("definition", "dod", "DefinitionOfDone"),
    "agent_key": ("agentKey",),
    "output_contract": ("outputContract",),
    "name": ("Name",),
    "description": ("Description",),
    "domain_tags": ("domainTags", "tags"),
}

_ALIAS_LOOKUP: Dict[str, str] = {
    alias: canonical
    for canonical, aliases in FIELD_ALIASES.items()
    for alias in aliases
}


def normalize_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``payload`` keyed by canonical field names.

    A canonical key wins over any alias for the same field; among aliases
    the first non-null value encountered wins. Unknown keys pass through.
    """
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        canonical = _ALIAS_LOOKUP.get(key)
        if canonical is None:
            result[key] = value
            continue
        if canonical in payload:
            continue
        if result.get(canonical) is None:
            result[canonical] = value
    return result


def _rules(info: ValidationInfo) -> AuditRulesConfig:
    context = info.context or {}
    return context.get("rules") or AuditRulesConfig()


class AuditCreateRequest(BaseModel):
    """Validated input for ``create_audit``."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    title: str
    engagement_id: int
    client_id: Optional[int] = None
    domain: Optional[str] = None
    audit_type: Optional[str] = None
    owner_contact_id: Optional[int] = None
    path_id: Optional[int] = None
    start_utc: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str, info: ValidationInfo) -> str:
        rules = _rules(info)
        if not rules.title_min_length <= len(value) <= rules.title_max_length:
            raise ValueError(
                f"Title is required ({rules.title_min_length}-"
                f"{rules.title_max_length} chars)"
            )
        return value

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if not value:
            return None
        limit = _rules(info).domain_max_length
        if len(value) > limit:
            raise ValueError(f"Domain must be at most {limit} chars")
        return value

    @field_validator("audit_type", "notes")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class StepProgressRequest(BaseModel):
    """Validated input for ``save_progress``."""

    model_config = ConfigDict(extra="ignore")

    step_id: int
    status: Optional[StepStatus] = None
    notes: Optional[str] = None
    output: Optional[Dict[str, Any]] = None


class StepDefinitionRequest(BaseModel):
    """Validated input for adding or editing a template step."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    gate: Optional[Gate] = None
    required: Optional[bool] = None
    definition_of_done: Optional[List[str]] = None
    agent_key: Optional[str] = None
    output_contract: Optional[Dict[str, Any]] = None


def parse_request(model: type[BaseModel], payload: Mapping[str, Any], **context: Any):
    """Normalise and validate ``payload``; raise field-keyed errors on failure."""
    try:
        return model.model_validate(normalize_payload(payload), context=context)
    except ValidationError as exc:
        raise ValidationFailedError.from_pydantic(exc) from exc
