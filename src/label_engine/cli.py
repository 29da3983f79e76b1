"""CLI for Label Engine.

Commands:
    setup                                   - Initialize the database schema
    set-value <tenant> <entity> <key> <v>   - Set a typed attribute value
    assign <tenant> <entity> <label>        - Assign a tag, category or metadata key
    apply <tenant> <entity>                 - Run the tenant's rules on an entity
    suggest <tenant> <entity>               - Generate suggestions for an entity
    resolve <suggestion-id> <decision>      - Accept or reject a suggestion
    sweep                                   - Expire assignments and suggestions
    show-assignments <tenant> <entity>      - List an entity's assignments
    history <tenant> <entity>               - Show an entity's assignment history
    add-rule <tenant> <name>                - Create a classification rule
    add-label <tenant> <name>               - Add a label to the vocabulary
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Any
from uuid import UUID

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from label_engine.config import settings
from label_engine.db import async_session_factory, init_db
from label_engine.engine import ClassificationEngine
from label_engine.entities import EntityRef, EntityText
from label_engine.exceptions import LabelEngineError, ValidationError
from label_engine.models.enums import (
    AssignmentSource,
    Decision,
    ExecutionMode,
    LabelKind,
    RuleAction,
    TextFormat,
    ValueType,
)
from label_engine.results import Failure

app = typer.Typer(
    name="label-engine",
    help="Label Engine: typed attributes, labels, rules and suggestions for entities",
    no_args_is_help=True,
)
console = Console()


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


def _engine() -> ClassificationEngine:
    return ClassificationEngine(async_session_factory)


def _parse_json(raw: str, option: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] {option} is not valid JSON: {e.msg}")
        raise typer.Exit(1) from None


def _parse_fields(pairs: list[str]) -> dict[str, Any]:
    """Turn key=value pairs into a snapshot; values are JSON when they parse as JSON."""
    fields: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Error:[/red] Expected key=value, got {pair!r}")
            raise typer.Exit(1)
        try:
            fields[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            fields[key.strip()] = raw
    return fields


def _print_error(error: LabelEngineError) -> None:
    if isinstance(error, ValidationError):
        console.print("[red]Validation failed:[/red]")
        for field, message in error.errors.items():
            console.print(f"  {field}: {message}")
    else:
        console.print(f"[red]Error:[/red] {error}")


def _print_failures(failures: list[Failure]) -> None:
    if not failures:
        return
    table = Table(title="Failures")
    table.add_column("Item", style="yellow")
    table.add_column("Error")
    table.add_column("Message")
    for failure in failures:
        table.add_row(failure.item, failure.error, failure.message)
    console.print(table)


@app.callback()
def main_callback(
    log_level: Annotated[
        str, typer.Option("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")
    ] = settings.log_level,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.command("setup")
def setup():
    """Set up Label Engine for first use (creates tables if they don't exist)."""

    async def _init():
        await init_db()

    try:
        run_async(_init())
    except Exception as e:
        console.print(f"[red]Error initializing schema:[/red] {e}")
        raise typer.Exit(1) from None

    console.print("[green]Database schema initialized.[/green]")
    console.print("\nYou can now run:")
    console.print("  [cyan]label-engine add-label <tenant> <name>[/cyan]   - Build the vocabulary")
    console.print("  [cyan]label-engine add-rule <tenant> <name>[/cyan]    - Add a rule")
    console.print("  [cyan]label-engine --help[/cyan]                      - See all commands")


@app.command("set-value")
def set_value(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    entity: Annotated[str, typer.Argument(help="Entity ID")],
    key: Annotated[str, typer.Argument(help="Attribute key")],
    value: Annotated[str, typer.Argument(help="Raw value (JSON for structured/array)")],
    value_type: Annotated[ValueType, typer.Option("--type", "-t", help="Value type")] = ValueType.TEXT,
    language: Annotated[str | None, typer.Option(help="Value language")] = None,
    value_format: Annotated[
        TextFormat | None, typer.Option("--format", help="Text format (url, email, phone, color)")
    ] = None,
):
    """Validate and store a typed attribute value."""

    async def _set():
        await init_db()
        return await _engine().set_value(
            EntityRef(tenant, entity),
            key,
            value_type,
            value,
            language=language,
            value_format=value_format,
            actor="cli",
        )

    result = run_async(_set())
    if not result.success:
        console.print("[red]Validation failed:[/red]")
        for field, message in result.errors.items():
            console.print(f"  {field}: {message}")
        raise typer.Exit(1)

    status = "updated" if result.changed else "unchanged"
    console.print(f"[green]OK[/green] {key} = {result.value.value!r} ({value_type.value}, {status})")


@app.command()
def assign(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    entity: Annotated[str, typer.Argument(help="Entity ID")],
    label: Annotated[str, typer.Argument(help="Label name")],
    kind: Annotated[LabelKind, typer.Option("--kind", "-k", help="Label kind")] = LabelKind.TAG,
    primary: Annotated[bool, typer.Option("--primary", help="Make it the primary of its kind")] = False,
    confidence: Annotated[float | None, typer.Option(help="Confidence in [0, 1]")] = None,
    source: Annotated[AssignmentSource, typer.Option(help="Assignment source")] = AssignmentSource.MANUAL,
    language: Annotated[str | None, typer.Option(help="Assignment language")] = None,
):
    """Assign a label to an entity."""

    async def _assign():
        await init_db()
        return await _engine().assign(
            EntityRef(tenant, entity),
            label,
            kind,
            source=source,
            confidence=confidence,
            is_primary=True if primary else None,
            language=language,
            actor="cli",
        )

    try:
        assignment = run_async(_assign())
    except LabelEngineError as e:
        _print_error(e)
        raise typer.Exit(1) from None

    marker = " [bold](primary)[/bold]" if assignment.is_primary else ""
    console.print(
        f"[green]OK[/green] {assignment.kind.value}:{assignment.label}{marker} "
        f"→ {tenant}/{entity} ({assignment.assignment_id})"
    )


@app.command()
def apply(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    entity: Annotated[str, typer.Argument(help="Entity ID")],
    field: Annotated[
        list[str] | None, typer.Option("--field", "-f", help="Snapshot field as key=value")
    ] = None,
    language: Annotated[str | None, typer.Option(help="Language")] = None,
):
    """Run the tenant's rules against an entity."""
    fields = _parse_fields(field or [])

    async def _apply():
        await init_db()
        return await _engine().notify_entity_changed(EntityRef(tenant, entity), fields, language=language)

    try:
        result = run_async(_apply())
    except LabelEngineError as e:
        _print_error(e)
        raise typer.Exit(1) from None

    panel_content = [
        f"[bold]Matched rules:[/bold] {', '.join(result.matched_rules) or '-'}",
        f"[bold]Created:[/bold] {len(result.created_ids)}",
        f"[bold]Changed:[/bold] {len(result.changed_ids)}",
        f"[bold]Suggestions:[/bold] {len(result.suggestion_ids)}",
        f"[bold]Values set:[/bold] {', '.join(result.modified_keys) or '-'}",
    ]
    console.print(Panel("\n".join(panel_content), title=f"Rules applied to {tenant}/{entity}"))
    _print_failures(result.failures)


@app.command()
def suggest(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    entity: Annotated[str, typer.Argument(help="Entity ID")],
    name: Annotated[str | None, typer.Option(help="Entity name (default: stored attribute)")] = None,
    description: Annotated[str | None, typer.Option(help="Entity description")] = None,
    max_suggestions: Annotated[int | None, typer.Option("--max", help="Maximum suggestions")] = None,
    source: Annotated[str | None, typer.Option(help="Suggestion source")] = None,
):
    """Generate suggestions for an entity."""
    text = EntityText(name=name, description=description) if name or description else None
    ref = EntityRef(tenant, entity)

    async def _suggest():
        await init_db()
        engine = _engine()
        result = await engine.generate(ref, text, source=source, max_suggestions=max_suggestions)
        return result, await engine.pending_suggestions(ref)

    result, pending = run_async(_suggest())
    console.print(f"[green]{len(result.suggestion_ids)} new suggestion(s)[/green]")

    if pending:
        table = Table(title=f"Pending suggestions for {tenant}/{entity}")
        table.add_column("ID", no_wrap=True)
        table.add_column("Label", style="cyan")
        table.add_column("Kind")
        table.add_column("Confidence", justify="right")
        table.add_column("Source")
        table.add_column("Reasoning")
        for s in pending:
            table.add_row(
                str(s.suggestion_id),
                s.label,
                s.kind.value,
                f"{s.confidence:.2f}",
                s.source,
                s.reasoning or "",
            )
        console.print(table)
    _print_failures(result.failures)


@app.command()
def resolve(
    suggestion_id: Annotated[str, typer.Argument(help="Suggestion ID (UUID)")],
    decision: Annotated[Decision, typer.Argument(help="accept or reject")],
    feedback: Annotated[int | None, typer.Option(help="Feedback score (-1, 0, 1)")] = None,
    comment: Annotated[str | None, typer.Option(help="Reviewer comment")] = None,
    reviewer: Annotated[str | None, typer.Option(help="Reviewer ID")] = None,
):
    """Accept or reject a pending suggestion."""
    try:
        sid = UUID(suggestion_id)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid UUID: {suggestion_id}")
        raise typer.Exit(1) from None

    async def _resolve():
        await init_db()
        return await _engine().resolve(
            sid, decision, feedback_score=feedback, comment=comment, reviewer=reviewer
        )

    try:
        result = run_async(_resolve())
    except LabelEngineError as e:
        _print_error(e)
        raise typer.Exit(1) from None

    if not result.applied:
        console.print(f"[yellow]No change:[/yellow] {result.reason}")
        raise typer.Exit(0)
    console.print(f"[green]Suggestion {result.status.value}[/green]")
    if result.assignment_id:
        console.print(f"  Assignment: {result.assignment_id}")


@app.command()
def sweep():
    """Deactivate expired assignments and expire overdue suggestions."""

    async def _sweep():
        await init_db()
        return await _engine().sweep()

    result = run_async(_sweep())
    console.print(
        f"[bold]Sweep:[/bold] {len(result.expired_assignment_ids)} assignment(s), "
        f"{len(result.expired_suggestion_ids)} suggestion(s) expired"
    )


@app.command("show-assignments")
def show_assignments(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    entity: Annotated[str, typer.Argument(help="Entity ID")],
    kind: Annotated[LabelKind | None, typer.Option("--kind", "-k", help="Filter by kind")] = None,
    show_all: Annotated[
        bool, typer.Option("--all", "-a", help="Include inactive, hidden and expired")
    ] = False,
):
    """List an entity's assignments."""

    async def _show():
        await init_db()
        return await _engine().list_assignments(
            EntityRef(tenant, entity), kind=kind, visible_only=not show_all
        )

    assignments = run_async(_show())
    if not assignments:
        console.print("[yellow]No assignments found.[/yellow]")
        return

    table = Table(title=f"Assignments of {tenant}/{entity}")
    table.add_column("Label", style="cyan")
    table.add_column("Kind")
    table.add_column("Primary")
    table.add_column("Source")
    table.add_column("Confidence", justify="right")
    table.add_column("Active")
    table.add_column("Performance", justify="right")
    table.add_column("Relevance", justify="right")
    table.add_column("Popularity", justify="right")
    for a in assignments:
        table.add_row(
            a.label,
            a.kind.value,
            "★" if a.is_primary else "",
            a.source.value,
            f"{a.confidence:.2f}",
            "yes" if a.is_active else "no",
            f"{a.performance_score:.2f}",
            f"{a.relevance_score:.2f}",
            f"{a.popularity_score:.2f}",
        )
    console.print(table)


@app.command()
def history(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    entity: Annotated[str, typer.Argument(help="Entity ID")],
    kind: Annotated[LabelKind | None, typer.Option("--kind", "-k", help="Filter by kind")] = None,
    label: Annotated[str | None, typer.Option(help="Filter by label")] = None,
    limit: Annotated[int | None, typer.Option(help="Maximum records")] = None,
):
    """Show an entity's assignment history, oldest first."""

    async def _history():
        await init_db()
        return await _engine().history(EntityRef(tenant, entity), kind=kind, label=label, limit=limit)

    rows = run_async(_history())
    if not rows:
        console.print("[yellow]No history found.[/yellow]")
        return

    table = Table(title=f"History of {tenant}/{entity}")
    table.add_column("#", justify="right")
    table.add_column("When")
    table.add_column("Label", style="cyan")
    table.add_column("Change")
    table.add_column("Fields")
    table.add_column("Actor")
    table.add_column("Reason")
    for row in rows:
        table.add_row(
            str(row.history_id),
            row.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{row.kind.value}:{row.label}",
            row.change_type.value,
            ", ".join(row.changed_fields),
            row.actor,
            row.reason or "",
        )
    console.print(table)


@app.command("add-rule")
def add_rule(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    name: Annotated[str, typer.Argument(help="Rule name (unique per tenant)")],
    conditions: Annotated[str, typer.Option(help="Condition tree as JSON")],
    target: Annotated[list[str], typer.Option("--target", "-t", help="Target label or key")],
    action: Annotated[RuleAction, typer.Option(help="Rule action")] = RuleAction.ASSIGN,
    kind: Annotated[LabelKind, typer.Option("--kind", "-k", help="Target label kind")] = LabelKind.TAG,
    priority: Annotated[int, typer.Option(help="Higher runs first")] = 0,
    confidence: Annotated[float | None, typer.Option(help="Confidence of produced assignments")] = None,
    mode: Annotated[ExecutionMode, typer.Option(help="Execution mode")] = ExecutionMode.AUTOMATIC,
    primary: Annotated[bool, typer.Option("--primary", help="Assign as primary")] = False,
    parameters: Annotated[str | None, typer.Option(help="Action parameters as JSON")] = None,
    description: Annotated[str | None, typer.Option(help="Description")] = None,
):
    """Create a classification rule."""
    parsed_conditions = _parse_json(conditions, "--conditions")
    parsed_parameters = _parse_json(parameters, "--parameters") if parameters else None

    async def _add():
        await init_db()
        return await _engine().create_rule(
            tenant,
            name,
            conditions=parsed_conditions,
            action=action,
            kind=kind,
            target_labels=target,
            parameters=parsed_parameters,
            description=description,
            is_primary=primary,
            priority=priority,
            confidence=confidence,
            execution_mode=mode,
        )

    try:
        rule = run_async(_add())
    except LabelEngineError as e:
        _print_error(e)
        raise typer.Exit(1) from None
    console.print(f"[green]Created rule[/green] {rule.name} ({rule.rule_id})")


@app.command("add-label")
def add_label(
    tenant: Annotated[str, typer.Argument(help="Tenant (store) ID")],
    name: Annotated[str, typer.Argument(help="Label display name")],
    kind: Annotated[LabelKind, typer.Option("--kind", "-k", help="tag or category")] = LabelKind.TAG,
    description: Annotated[str | None, typer.Option(help="Description")] = None,
    color: Annotated[str | None, typer.Option(help="Display colour (#RRGGBB)")] = None,
    alias: Annotated[list[str] | None, typer.Option("--alias", help="Alternative spelling")] = None,
):
    """Add a label to a tenant's vocabulary."""

    async def _add():
        await init_db()
        return await _engine().create_label(
            tenant, kind, name, description=description, color=color, aliases=alias or []
        )

    try:
        label, created = run_async(_add())
    except LabelEngineError as e:
        _print_error(e)
        raise typer.Exit(1) from None

    verb = "Created" if created else "Exists:"
    console.print(f"[green]{verb}[/green] {label.kind.value}:{label.slug}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
