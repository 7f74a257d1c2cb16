from datetime import datetime, timezone

import pytest

from auditflow.catalog import TemplateCatalog
from auditflow.config import AuditflowConfig, AuditRulesConfig
from auditflow.errors import (
    AuditNotFoundError,
    StepNotFoundError,
    TemplateNotFoundError,
    TransactionError,
    ValidationFailedError,
)
from auditflow.manager import AuditInstanceManager, build_services
from auditflow.persistence import InMemoryRepository
from auditflow.utils.retry import RetryPolicy

NO_WAIT = RetryPolicy.from_delays("test", [0, 0, 0])

STEPS = [
    {"title": "Kickoff", "gate": "discovery"},
    {"title": "Interviews", "gate": "discovery"},
    {"title": "Analysis", "gate": "analysis"},
]


class FlakyRepository(InMemoryRepository):
    """Fails the next ``failures`` saves before the commit happens."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures

    async def save(self, aggregate):
        if self.failures > 0:
            self.failures -= 1
            raise TransactionError("database unavailable")
        await super().save(aggregate)


async def _setup(repo=None, config=None):
    repo = repo or InMemoryRepository()
    manager = AuditInstanceManager(repo, repo, repo, config=config, seed_policy=NO_WAIT)
    catalog = TemplateCatalog(repo, repo, repo, visibility_policy=NO_WAIT)
    template = await catalog.create("Process review", steps=STEPS)
    return repo, manager, catalog, template


async def _assigned_without_steps(repo, manager, path_id) -> int:
    view = await manager.create_audit("Stuck audit", 1)
    aggregate = await repo.load(view.header.audit_id)
    aggregate.header.path_id = path_id
    await repo.save(aggregate)
    return view.header.audit_id


@pytest.mark.asyncio
async def test_create_without_path_has_no_state():
    _, manager, _, _ = await _setup()
    view = await manager.create_audit("Vendor review", 3, domain="Finance")

    assert view.header.audit_id == 1
    assert view.header.state is None
    assert view.header.percent_complete == 0
    assert view.header.current_step_id is None
    assert view.header.version == 1
    assert view.steps == []


@pytest.mark.asyncio
async def test_create_with_path_seeds_steps():
    _, manager, _, template = await _setup()
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    view = await manager.create_audit(
        "Vendor review", 3, path_id=template.path_id, start_utc=start
    )

    assert [s.seq for s in view.steps] == [1, 2, 3]
    assert all(s.status == "not_started" for s in view.steps)
    assert view.header.current_step_id == view.steps[0].step_id
    assert view.steps[0].is_current
    assert view.header.state == "discovery"
    assert view.header.percent_complete == 0
    assert view.header.audit_type == "Process review"
    assert view.header.start_utc == start


@pytest.mark.asyncio
async def test_create_with_unknown_path_saves_nothing():
    _, manager, _, _ = await _setup()
    with pytest.raises(TemplateNotFoundError):
        await manager.create_audit("Vendor review", 3, path_id=99)
    assert await manager.list_audits() == []


@pytest.mark.asyncio
async def test_create_validation_is_field_keyed():
    _, manager, _, _ = await _setup()
    with pytest.raises(ValidationFailedError) as exc:
        await manager.create_audit("ab", 3, domain="d" * 60)
    assert set(exc.value.field_errors) == {"title", "domain"}


@pytest.mark.asyncio
async def test_create_from_payload_accepts_aliases():
    _, manager, _, template = await _setup()
    view = await manager.create_audit_from_payload(
        {
            "Title": "Vendor review",
            "engagementId": 8,
            "templateId": template.path_id,
            "startDate": "2024-05-01T00:00:00+00:00",
        }
    )
    assert view.header.engagement_id == 8
    assert view.header.path_id == template.path_id
    assert view.header.start_utc.year == 2024
    assert len(view.steps) == 3


@pytest.mark.asyncio
async def test_require_published_templates():
    config = AuditflowConfig(audits=AuditRulesConfig(require_published_templates=True))
    _, manager, catalog, template = await _setup(config=config)

    with pytest.raises(ValidationFailedError) as exc:
        await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    assert "path_id" in exc.value.field_errors

    await catalog.publish(template.path_id, "1.0")
    view = await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    assert len(view.steps) == 3


@pytest.mark.asyncio
async def test_set_path_seeds_once():
    _, manager, catalog, template = await _setup()
    other = await catalog.create("Other path", steps=[{"title": "Only step"}])
    view = await manager.create_audit("Vendor review", 3)

    seeded = await manager.set_path(view.header.audit_id, template.path_id)
    assert len(seeded.steps) == 3

    again = await manager.set_path(view.header.audit_id, other.path_id)
    assert again.header.path_id == template.path_id
    assert [s.step_id for s in again.steps] == [s.step_id for s in seeded.steps]
    assert again.header.version == seeded.header.version


@pytest.mark.asyncio
async def test_heal_outcomes_without_work():
    _, manager, _, template = await _setup()
    bare = await manager.create_audit("Vendor review", 3)
    seeded = await manager.create_audit("Vendor review", 3, path_id=template.path_id)

    assert (await manager.heal_path(bare.header.audit_id)).outcome == "no_path"
    result = await manager.heal_path(seeded.header.audit_id)
    assert result.outcome == "already_seeded"
    assert result.attempts == 0


@pytest.mark.asyncio
async def test_heal_retries_failed_seed():
    repo, manager, _, template = await _setup(FlakyRepository())
    audit_id = await _assigned_without_steps(repo, manager, template.path_id)
    repo.failures = 1

    result = await manager.heal_path(audit_id)
    assert result.outcome == "seeded"
    assert result.attempts == 2
    assert len(result.audit.steps) == 3
    assert result.audit.header.state == "discovery"


@pytest.mark.asyncio
async def test_heal_gives_up_after_policy():
    repo, manager, _, template = await _setup(FlakyRepository())
    audit_id = await _assigned_without_steps(repo, manager, template.path_id)
    repo.failures = 10

    result = await manager.heal_path(audit_id)
    assert result.outcome == "unresolved"
    assert result.attempts == 3
    assert result.audit.header.path_id == template.path_id
    assert result.audit.steps == []


@pytest.mark.asyncio
async def test_heal_with_missing_template_is_unresolved():
    repo, manager, _, _ = await _setup()
    audit_id = await _assigned_without_steps(repo, manager, 99)

    result = await manager.heal_path(audit_id)
    assert result.outcome == "unresolved"
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_heal_with_empty_template_saves_nothing():
    repo, manager, catalog, _ = await _setup()
    empty = await catalog.create("Empty path")
    audit_id = await _assigned_without_steps(repo, manager, empty.path_id)
    version = (await repo.load(audit_id)).header.version

    result = await manager.heal_path(audit_id)
    assert result.outcome == "empty_template"
    assert result.attempts == 0
    assert result.audit.steps == []
    assert (await repo.load(audit_id)).header.version == version


@pytest.mark.asyncio
async def test_progress_mark_done_and_reopen_keep_pointer():
    _, manager, _, template = await _setup()
    view = await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    audit_id = view.header.audit_id
    first, second, _ = [s.step_id for s in view.steps]

    view = await manager.save_progress(audit_id, second, notes="Booked interviews")
    assert view.steps[1].status == "in_progress"
    assert view.header.current_step_id == first

    view = await manager.mark_done(audit_id, second)
    assert view.steps[1].status == "done"
    assert view.header.percent_complete == 33
    assert view.header.current_step_id == first

    view = await manager.reopen(audit_id, second)
    assert view.steps[1].status == "in_progress"
    assert view.header.percent_complete == 0


@pytest.mark.asyncio
async def test_save_progress_from_payload():
    _, manager, _, template = await _setup()
    view = await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    step_id = view.steps[2].step_id

    view = await manager.save_progress_from_payload(
        view.header.audit_id, {"stepId": step_id, "output_json": {"risks": 2}}
    )
    assert view.steps[2].status == "in_progress"
    assert view.steps[2].output == {"risks": 2}


@pytest.mark.asyncio
async def test_foreign_step_is_rejected():
    _, manager, _, template = await _setup()
    one = await manager.create_audit("Audit one", 3, path_id=template.path_id)
    two = await manager.create_audit("Audit two", 3, path_id=template.path_id)

    with pytest.raises(StepNotFoundError):
        await manager.advance(one.header.audit_id, two.steps[0].step_id)


@pytest.mark.asyncio
async def test_failed_save_leaves_audit_unchanged():
    repo, manager, _, template = await _setup(FlakyRepository())
    view = await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    repo.failures = 1

    with pytest.raises(TransactionError):
        await manager.advance(view.header.audit_id)

    after = await manager.get_audit(view.header.audit_id)
    assert after == view

    retried = await manager.advance(view.header.audit_id)
    assert retried.steps[0].status == "done"
    assert retried.header.current_step_id == view.steps[1].step_id


@pytest.mark.asyncio
async def test_recalc_repairs_drift_only_when_needed():
    repo, manager, _, template = await _setup()
    view = await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    audit_id = view.header.audit_id

    clean = await manager.recalc(audit_id)
    assert clean.header.version == view.header.version

    aggregate = await repo.load(audit_id)
    aggregate.header.percent_complete = 80
    await repo.save(aggregate)

    repaired = await manager.recalc(audit_id)
    assert repaired.header.percent_complete == 0
    assert repaired.header.version == aggregate.header.version + 1


@pytest.mark.asyncio
async def test_delete_audit():
    _, manager, _, template = await _setup()
    view = await manager.create_audit("Vendor review", 3, path_id=template.path_id)
    audit_id = view.header.audit_id

    await manager.delete_audit(audit_id)
    with pytest.raises(AuditNotFoundError):
        await manager.get_audit(audit_id)
    with pytest.raises(AuditNotFoundError):
        await manager.delete_audit(audit_id)


@pytest.mark.asyncio
async def test_list_audits_filters_by_path():
    _, manager, _, template = await _setup()
    await manager.create_audit("Audit one", 3, path_id=template.path_id)
    await manager.create_audit("Audit two", 3)

    assert [a.title for a in await manager.list_audits()] == ["Audit one", "Audit two"]
    summaries = await manager.list_audits(path_id=template.path_id)
    assert [(a.title, a.state) for a in summaries] == [("Audit one", "discovery")]


def test_build_services_share_one_repository():
    repo = InMemoryRepository()
    manager, catalog = build_services(repo, AuditflowConfig())
    assert manager._audits is repo
    assert catalog._templates is repo
