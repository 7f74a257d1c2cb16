"""Command line interface for auditflow templates and audits."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Coroutine, Optional, TypeVar

import typer
import yaml

from auditflow.config import load_config
from auditflow.contracts import AuditView, Template
from auditflow.errors import AuditflowError, NotFoundError, ValidationFailedError
from auditflow.manager import build_services

T = TypeVar("T")

app = typer.Typer(help="CLI for auditflow audits and templates")

# Command groups
template_app = typer.Typer(help="Commands for managing path templates")
audit_app = typer.Typer(help="Commands for driving audits")

app.add_typer(template_app, name="template")
app.add_typer(audit_app, name="audit")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """auditflow CLI entry point."""
    level = "DEBUG" if verbose else load_config().log_level
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` and turn engine errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except ValidationFailedError as exc:
        for field, message in exc.field_errors.items():
            typer.secho(f"{field}: {message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except NotFoundError as exc:
        typer.echo(f"{exc.kind.capitalize()} not found")
        raise typer.Exit(code=1)
    except AuditflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _print_template(template: Template) -> None:
    status = "published" if template.published else "draft"
    typer.echo(
        f"Template {template.path_id}: {template.name} "
        f"({template.version or 'draft'}, {status})"
    )
    for step in template.steps:
        flag = " (required)" if step.required else ""
        typer.echo(f"  {step.seq}. [{step.gate}] {step.title}{flag}")


def _print_audit(view: AuditView) -> None:
    header = view.header
    typer.echo(
        f"Audit {header.audit_id}: {header.title} "
        f"[{header.state or 'no path'}] {header.percent_complete}%"
    )
    if header.path_id is not None and not view.steps:
        typer.echo("  Path assigned but no steps seeded")
    for step in view.steps:
        marker = ">" if step.is_current else " "
        typer.echo(f"{marker} {step.seq}. [{step.gate}] {step.title}: {step.status}")


# ----------------------------------------------------------------------
# Templates


@template_app.command("list")
def template_list() -> None:
    """List all templates with version and publish status."""
    _, catalog = build_services()
    templates = _run(catalog.list())
    if not templates:
        typer.echo("No templates found")
        return
    for tpl in templates:
        status = "published" if tpl.published else "draft"
        typer.echo(
            f"{tpl.path_id}\t{tpl.name}\t{tpl.version or '-'}\t{status}\t"
            f"{len(tpl.steps)} steps"
        )


@template_app.command("show")
def template_show(path_id: int) -> None:
    """Show a template and its ordered step definitions."""
    _, catalog = build_services()
    _print_template(_run(catalog.get(path_id)))


@template_app.command("import")
def template_import(file: Path) -> None:
    """
    Create templates from a YAML file.

    The file holds either one template mapping or a ``templates`` list. Each
    template may carry a ``publish`` version to publish it straight away.

    Example:
        auditflow template import ./paths/process-review.yaml
    """
    if not file.exists():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(file.read_text()) or {}
    entries = data.get("templates", [data]) if isinstance(data, dict) else data
    _, catalog = build_services()

    async def _import() -> list[Template]:
        created = []
        for entry in entries:
            entry = dict(entry)
            version = entry.pop("publish", None)
            template = await catalog.create(
                name=entry.get("name"),
                description=entry.get("description"),
                domain_tags=entry.get("domain_tags"),
                notes=entry.get("notes"),
                steps=entry.get("steps") or [],
            )
            if version and not template.provisional:
                template = await catalog.publish(template.path_id, str(version))
            created.append(template)
        return created

    for template in _run(_import()):
        typer.echo(f"Imported template {template.path_id}: {template.name}")


@template_app.command("publish")
def template_publish(path_id: int, version: str) -> None:
    """Publish a template under ``version``; its steps become read-only."""
    _, catalog = build_services()
    template = _run(catalog.publish(path_id, version))
    typer.echo(f"Template {template.path_id} published as {template.version}")


@template_app.command("clone")
def template_clone(path_id: int) -> None:
    """Copy a template into a new editable draft."""
    _, catalog = build_services()
    new_id = _run(catalog.clone(path_id))
    typer.echo(f"Cloned template {path_id} into {new_id}")


@template_app.command("usage")
def template_usage(path_id: int) -> None:
    """Show audits using a template, for impact analysis."""
    _, catalog = build_services()
    usage = _run(catalog.get_usage(path_id))
    typer.echo(
        f"Audits: {usage.audit_count} (closed {usage.closed_count}, "
        f"complete {usage.complete_count}, avg {usage.average_percent}%)"
    )
    for audit in usage.audits:
        typer.echo(
            f"{audit.audit_id}\t{audit.title}\t{audit.state or '-'}\t"
            f"{audit.percent_complete}%"
        )


# ----------------------------------------------------------------------
# Audits


@audit_app.command("list")
def audit_list(path_id: Optional[int] = typer.Option(None, help="Only audits on this template")) -> None:
    """List audits with state and completion."""
    manager, _ = build_services()
    audits = _run(manager.list_audits(path_id=path_id))
    if not audits:
        typer.echo("No audits found")
        return
    for audit in audits:
        typer.echo(
            f"{audit.audit_id}\t{audit.title}\t{audit.state or '-'}\t"
            f"{audit.percent_complete}%"
        )


@audit_app.command("show")
def audit_show(audit_id: int) -> None:
    """Show an audit header and its steps; ``>`` marks the current step."""
    manager, _ = build_services()
    _print_audit(_run(manager.get_audit(audit_id)))


@audit_app.command("create")
def audit_create(
    title: str,
    engagement_id: int = typer.Option(..., help="Engagement the audit belongs to"),
    path_id: Optional[int] = typer.Option(None, help="Template to seed steps from"),
    domain: Optional[str] = None,
    audit_type: Optional[str] = None,
    owner_contact_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> None:
    """Create an audit, optionally seeded from a template."""
    manager, _ = build_services()
    view = _run(
        manager.create_audit(
            title=title,
            engagement_id=engagement_id,
            domain=domain,
            audit_type=audit_type,
            owner_contact_id=owner_contact_id,
            path_id=path_id,
            notes=notes,
        )
    )
    typer.echo(f"Created audit {view.header.audit_id}")
    _print_audit(view)


@audit_app.command("set-path")
def audit_set_path(audit_id: int, path_id: int) -> None:
    """Assign a template; does nothing once steps exist."""
    manager, _ = build_services()
    _print_audit(_run(manager.set_path(audit_id, path_id)))


@audit_app.command("heal")
def audit_heal(audit_id: int) -> None:
    """Retry seeding for an audit that has a path but no steps."""
    manager, _ = build_services()
    result = _run(manager.heal_path(audit_id))
    typer.echo(f"Heal {result.outcome} after {result.attempts} attempts")
    _print_audit(result.audit)


@audit_app.command("progress")
def audit_progress(
    audit_id: int,
    step_id: int,
    status: Optional[str] = None,
    notes: Optional[str] = None,
    output: Optional[str] = typer.Option(None, help="JSON object to store as output"),
) -> None:
    """Save status, notes or output for a step."""
    payload: dict[str, Any] = {"step_id": step_id, "status": status, "notes": notes}
    if output:
        try:
            payload["output"] = json.loads(output)
        except json.JSONDecodeError:
            typer.secho("output: invalid JSON", fg=typer.colors.RED)
            raise typer.Exit(code=1)
    manager, _ = build_services()
    _print_audit(_run(manager.save_progress_from_payload(audit_id, payload)))


@audit_app.command("done")
def audit_done(audit_id: int, step_id: int) -> None:
    """Mark a step done without moving the current step."""
    manager, _ = build_services()
    _print_audit(_run(manager.mark_done(audit_id, step_id)))


@audit_app.command("reopen")
def audit_reopen(audit_id: int, step_id: int) -> None:
    """Move a done step back to in_progress."""
    manager, _ = build_services()
    _print_audit(_run(manager.reopen(audit_id, step_id)))


@audit_app.command("advance")
def audit_advance(
    audit_id: int,
    step_id: Optional[int] = typer.Option(None, help="Step to complete (default: current)"),
) -> None:
    """Mark a step done and advance to the next open step."""
    manager, _ = build_services()
    _print_audit(_run(manager.advance(audit_id, step_id)))


@audit_app.command("advance-to")
def audit_advance_to(audit_id: int, step_id: int) -> None:
    """Jump the current step pointer to any step."""
    manager, _ = build_services()
    _print_audit(_run(manager.advance_to(audit_id, step_id)))


@audit_app.command("recalc")
def audit_recalc(audit_id: int) -> None:
    """Recalculate percent complete from step statuses."""
    manager, _ = build_services()
    _print_audit(_run(manager.recalc(audit_id)))


@audit_app.command("delete")
def audit_delete(audit_id: int) -> None:
    """Delete an audit and all of its steps."""
    manager, _ = build_services()
    _run(manager.delete_audit(audit_id))
    typer.echo(f"Deleted audit {audit_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
