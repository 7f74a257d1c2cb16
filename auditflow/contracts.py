"""Core data contracts for the audit workflow engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, Field, model_validator

from .errors import StepNotFoundError
from .progress import derive_state

StepStatus = Literal["not_started", "in_progress", "done"]
Gate = Literal["discovery", "analysis", "playback", "roadmap"]
AuditState = Literal["discovery", "analysis", "playback", "roadmap", "closed"]

STEP_STATUSES: tuple[str, ...] = get_args(StepStatus)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepDefinition(BaseModel):
    """One ordered step of a reusable template."""

    seq: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=200)
    gate: Gate = "discovery"
    required: bool = False
    definition_of_done: List[str] = Field(default_factory=list)
    agent_key: Optional[str] = None
    output_contract: Optional[Dict[str, Any]] = None


class Template(BaseModel):
    """Versioned, publishable definition of an audit path."""

    path_id: int
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    version: Optional[str] = None
    published: bool = False
    domain_tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    # Placeholder returned while a freshly created template is not yet visible.
    provisional: bool = False
    # Real id of the saved template a provisional placeholder stands in for.
    pending_path_id: Optional[int] = None
    steps: List[StepDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_sequence(self) -> "Template":
        seqs = [step.seq for step in self.steps]
        if seqs != list(range(1, len(seqs) + 1)):
            raise ValueError(
                "step seq values must be unique and contiguous starting at 1"
            )
        return self


class Audit(BaseModel):
    """Audit header; ``state`` is derived and lives on the aggregate."""

    audit_id: int
    engagement_id: int
    client_id: Optional[int] = None
    title: str
    domain: Optional[str] = None
    audit_type: Optional[str] = None
    owner_contact_id: Optional[int] = None
    path_id: Optional[int] = None
    current_step_id: Optional[int] = None
    percent_complete: int = Field(default=0, ge=0, le=100)
    start_utc: Optional[datetime] = None
    notes: Optional[str] = None
    created_utc: datetime = Field(default_factory=utcnow)
    updated_utc: datetime = Field(default_factory=utcnow)
    version: int = 0


class Step(BaseModel):
    """A seeded step instance with denormalised template fields."""

    step_id: int
    audit_id: int
    seq: int
    title: str
    gate: Gate
    required: bool = False
    definition: List[str] = Field(default_factory=list)
    status: StepStatus = "not_started"
    notes: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    updated_utc: Optional[datetime] = None


class StepView(Step):
    is_current: bool = False


class AuditHeader(Audit):
    state: Optional[AuditState] = None
    is_closed: bool = False
    is_fully_complete: bool = False
    step_count: int = 0
    done_count: int = 0


class AuditView(BaseModel):
    """Snapshot returned to callers: header plus ordered steps."""

    header: AuditHeader
    steps: List[StepView] = Field(default_factory=list)

    @property
    def current_step(self) -> Optional[StepView]:
        return next((s for s in self.steps if s.is_current), None)


class AuditAggregate(BaseModel):
    """The ``(Audit, Step[])`` unit that is loaded and saved atomically."""

    header: Audit
    steps: List[Step] = Field(default_factory=list)

    @property
    def audit_id(self) -> int:
        return self.header.audit_id

    def find_step(self, step_id: int) -> Optional[Step]:
        return next((s for s in self.steps if s.step_id == step_id), None)

    def require_step(self, step_id: int) -> Step:
        step = self.find_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id, audit_id=self.audit_id)
        return step

    @property
    def current_step(self) -> Optional[Step]:
        if self.header.current_step_id is None:
            return None
        return self.find_step(self.header.current_step_id)

    @property
    def done_count(self) -> int:
        return sum(1 for s in self.steps if s.status == "done")

    @property
    def state(self) -> Optional[str]:
        return derive_state(self)

    @property
    def is_closed(self) -> bool:
        """Forward scan reached the end; earlier steps may still be undone."""
        return self.header.current_step_id is None and bool(self.steps)

    @property
    def is_fully_complete(self) -> bool:
        return bool(self.steps) and all(s.status == "done" for s in self.steps)

    def touch(self) -> None:
        self.header.updated_utc = utcnow()

    def ordered(self) -> None:
        self.steps.sort(key=lambda s: s.seq)

    def to_view(self) -> AuditView:
        current_id = self.header.current_step_id
        header = AuditHeader(
            **self.header.model_dump(),
            state=self.state,
            is_closed=self.is_closed,
            is_fully_complete=self.is_fully_complete,
            step_count=len(self.steps),
            done_count=self.done_count,
        )
        steps = [
            StepView(**s.model_dump(), is_current=s.step_id == current_id)
            for s in sorted(self.steps, key=lambda s: s.seq)
        ]
        return AuditView(header=header, steps=steps)


class AuditSummary(BaseModel):
    audit_id: int
    title: str
    state: Optional[AuditState] = None
    percent_complete: int = 0
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    @classmethod
    def from_aggregate(cls, aggregate: AuditAggregate) -> "AuditSummary":
        return cls(
            audit_id=aggregate.audit_id,
            title=aggregate.header.title,
            state=aggregate.state,
            percent_complete=aggregate.header.percent_complete,
            created_utc=aggregate.header.created_utc,
            updated_utc=aggregate.header.updated_utc,
        )


class TemplateUsage(BaseModel):
    """Impact analysis for a template before it is edited or retired."""

    path_id: int
    audit_count: int = 0
    closed_count: int = 0
    complete_count: int = 0
    average_percent: float = 0.0
    by_state: Dict[str, int] = Field(default_factory=dict)
    audits: List[AuditSummary] = Field(default_factory=list)
