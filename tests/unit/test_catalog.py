import pytest

from auditflow.catalog import TemplateCatalog
from auditflow.contracts import Template
from auditflow.errors import (
    PublishConflictError,
    TemplateFrozenError,
    TemplateNotFoundError,
    ValidationFailedError,
)
from auditflow.manager import AuditInstanceManager
from auditflow.persistence import InMemoryRepository, SQLiteRepository
from auditflow.utils.retry import RetryPolicy

NO_WAIT = RetryPolicy.from_delays("test", [0, 0, 0])

STEPS = [
    {"title": "Kickoff", "state_gate": "discovery", "required": True},
    {"title": "Process mapping", "gate": "analysis", "dod": ["Map signed off"]},
    {"title": "Playback", "gate": "playback"},
]


class LaggingRepository(InMemoryRepository):
    """Hides freshly written templates from ``get_template`` for a few reads."""

    def __init__(self, hidden_reads: int):
        super().__init__()
        self.hidden_reads = hidden_reads

    async def get_template(self, path_id):
        if self.hidden_reads > 0:
            self.hidden_reads -= 1
            return None
        return await super().get_template(path_id)


def _catalog(repo=None) -> TemplateCatalog:
    repo = repo or InMemoryRepository()
    return TemplateCatalog(repo, repo, repo, visibility_policy=NO_WAIT)


@pytest.mark.asyncio
async def test_create_normalises_and_numbers_steps():
    catalog = _catalog()
    template = await catalog.create("Process review", steps=STEPS, domain_tags=["ops"])

    assert template.path_id == 1
    assert not template.provisional
    assert [s.seq for s in template.steps] == [1, 2, 3]
    assert template.steps[0].gate == "discovery"
    assert template.steps[0].required is True
    assert template.steps[1].definition_of_done == ["Map signed off"]
    assert (await catalog.get(1)).name == "Process review"
    assert [t.path_id for t in await catalog.list()] == [1]


@pytest.mark.asyncio
async def test_create_rejects_blank_name_and_bad_gate():
    catalog = _catalog()
    with pytest.raises(ValidationFailedError) as exc:
        await catalog.create("   ")
    assert "name" in exc.value.field_errors

    with pytest.raises(ValidationFailedError) as exc:
        await catalog.create("Bad", steps=[{"title": "x", "gate": "review"}])
    assert "gate" in exc.value.field_errors


@pytest.mark.asyncio
async def test_create_waits_for_visibility():
    catalog = _catalog(LaggingRepository(hidden_reads=2))
    template = await catalog.create("Slow path", steps=STEPS)
    assert template.path_id == 1
    assert not template.provisional


@pytest.mark.asyncio
async def test_create_falls_back_to_provisional_and_resolves():
    repo = LaggingRepository(hidden_reads=10)
    catalog = _catalog(repo)

    template = await catalog.create("Slow path", steps=STEPS)
    assert template.provisional
    assert template.path_id == -1
    assert template.pending_path_id == 1
    assert len(template.steps) == 3

    repo.hidden_reads = 0
    resolved = await catalog.resolve(template)
    assert resolved is not None
    assert resolved.path_id == 1
    assert not resolved.provisional


@pytest.mark.asyncio
async def test_resolve_gives_up_when_template_never_appears():
    catalog = _catalog(LaggingRepository(hidden_reads=10))
    provisional = await catalog.create("Ghost", steps=STEPS)
    assert await catalog.resolve(provisional) is None


@pytest.mark.asyncio
async def test_resolve_finds_the_saved_template_not_an_older_namesake():
    repo = LaggingRepository(hidden_reads=0)
    catalog = _catalog(repo)
    older = await catalog.create("Ops review", steps=[{"title": "Old"}])
    assert not older.provisional

    repo.hidden_reads = 4
    provisional = await catalog.create("Ops review", steps=[{"title": "New"}])
    assert provisional.provisional

    resolved = await catalog.resolve(provisional)
    assert resolved.path_id == 2
    assert [s.title for s in resolved.steps] == ["New"]


@pytest.mark.asyncio
async def test_resolve_matches_by_name_without_a_saved_id():
    catalog = _catalog()
    await catalog.create("Process review", steps=STEPS)
    placeholder = Template(path_id=-7, name="process review", provisional=True)

    resolved = await catalog.resolve(placeholder)
    assert resolved.path_id == 1


@pytest.mark.asyncio
async def test_create_orders_steps_by_supplied_seq():
    catalog = _catalog()
    template = await catalog.create(
        "Process review",
        steps=[{"seq": 2, "title": "Mapping"}, {"seq": 1, "title": "Kickoff"}],
    )
    assert [(s.seq, s.title) for s in template.steps] == [(1, "Kickoff"), (2, "Mapping")]

    with pytest.raises(ValidationFailedError) as exc:
        await catalog.create(
            "Gappy", steps=[{"seq": 1, "title": "a"}, {"seq": 5, "title": "b"}]
        )
    assert "steps" in exc.value.field_errors

    with pytest.raises(ValidationFailedError) as exc:
        await catalog.create("Mixed", steps=[{"seq": 2, "title": "a"}, {"title": "b"}])
    assert "steps" in exc.value.field_errors


@pytest.mark.asyncio
async def test_publish_is_idempotent_and_conflicts_on_new_version():
    catalog = _catalog()
    template = await catalog.create("Process review", steps=STEPS)

    published = await catalog.publish(template.path_id, "1.0")
    assert published.published and published.version == "1.0"

    again = await catalog.publish(template.path_id, "1.0")
    assert again.version == "1.0"

    with pytest.raises(PublishConflictError):
        await catalog.publish(template.path_id, "2.0")

    with pytest.raises(ValidationFailedError) as exc:
        await catalog.publish(template.path_id, " ")
    assert "version" in exc.value.field_errors


@pytest.mark.asyncio
async def test_published_steps_are_frozen_but_metadata_is_editable():
    catalog = _catalog()
    template = await catalog.create("Process review", steps=STEPS)
    await catalog.publish(template.path_id, "1.0")

    with pytest.raises(TemplateFrozenError):
        await catalog.add_step(template.path_id, title="Extra")
    with pytest.raises(TemplateFrozenError):
        await catalog.delete_step(template.path_id, 1)

    updated = await catalog.update(template.path_id, description="Quarterly")
    assert updated.description == "Quarterly"
    assert updated.published

    with pytest.raises(ValidationFailedError):
        await catalog.update(template.path_id, version="9.9")


@pytest.mark.asyncio
async def test_update_validates_metadata_before_saving(tmp_path):
    repo = SQLiteRepository(tmp_path / "templates.db")
    catalog = _catalog(repo)
    template = await catalog.create("Process review", steps=STEPS, domain_tags=["ops"])

    with pytest.raises(ValidationFailedError) as exc:
        await catalog.update(template.path_id, domain_tags="ops")
    assert "domain_tags" in exc.value.field_errors

    with pytest.raises(ValidationFailedError) as exc:
        await catalog.update(template.path_id, name="  ")
    assert "name" in exc.value.field_errors

    renamed = await catalog.update(template.path_id, name="  Ops review ")
    assert renamed.name == "Ops review"
    stored = await catalog.get(template.path_id)
    assert stored.name == "Ops review"
    assert stored.domain_tags == ["ops"]
    repo.close()


@pytest.mark.asyncio
async def test_clone_produces_editable_draft():
    catalog = _catalog()
    template = await catalog.create("Process review", steps=STEPS)
    await catalog.publish(template.path_id, "1.0")

    new_id = await catalog.clone(template.path_id)
    clone = await catalog.get(new_id)
    assert new_id != template.path_id
    assert clone.name == "Process review (copy)"
    assert not clone.published and clone.version is None
    assert [s.title for s in clone.steps] == [s["title"] for s in STEPS]

    step = await catalog.add_step(new_id, title="Roadmap", stateGate="roadmap")
    assert step.seq == 4
    assert len((await catalog.get(template.path_id)).steps) == 3


@pytest.mark.asyncio
async def test_step_edits_keep_sequence_contiguous():
    catalog = _catalog()
    template = await catalog.create("Process review", steps=STEPS)
    path_id = template.path_id

    edited = await catalog.update_step(path_id, 2, title="Value stream mapping")
    assert edited.title == "Value stream mapping"
    assert edited.gate == "analysis"

    reordered = await catalog.reorder_steps(path_id, [3, 1, 2])
    assert [s.title for s in reordered.steps] == [
        "Playback",
        "Kickoff",
        "Value stream mapping",
    ]
    assert [s.seq for s in reordered.steps] == [1, 2, 3]

    trimmed = await catalog.delete_step(path_id, 1)
    assert [(s.seq, s.title) for s in trimmed.steps] == [
        (1, "Kickoff"),
        (2, "Value stream mapping"),
    ]

    with pytest.raises(ValidationFailedError):
        await catalog.reorder_steps(path_id, [1, 1])
    with pytest.raises(ValidationFailedError):
        await catalog.update_step(path_id, 7, title="Missing")


@pytest.mark.asyncio
async def test_unknown_template_is_not_found():
    catalog = _catalog()
    with pytest.raises(TemplateNotFoundError):
        await catalog.get(42)
    with pytest.raises(TemplateNotFoundError):
        await catalog.clone(42)


@pytest.mark.asyncio
async def test_usage_reports_audits_on_template():
    repo = InMemoryRepository()
    catalog = _catalog(repo)
    manager = AuditInstanceManager(repo, repo, repo, seed_policy=NO_WAIT)
    template = await catalog.create("Process review", steps=STEPS)

    empty = await catalog.get_usage(template.path_id)
    assert empty.audit_count == 0 and empty.audits == []

    finished = await manager.create_audit("Audit one", 1, path_id=template.path_id)
    await manager.create_audit("Audit two", 1, path_id=template.path_id)
    await manager.create_audit("Unrelated", 1)
    for _ in STEPS:
        await manager.advance(finished.header.audit_id)

    usage = await catalog.get_usage(template.path_id)
    assert usage.audit_count == 2
    assert usage.closed_count == 1
    assert usage.complete_count == 1
    assert usage.average_percent == 50.0
    assert usage.by_state == {"closed": 1, "discovery": 1}
    assert {a.title for a in usage.audits} == {"Audit one", "Audit two"}
