from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Annotated

import typer

from revengine import __version__
from revengine.config import (
    WorkspaceError,
    ensure_workspaces_dir,
    load_workspace,
    set_current_workspace,
    workspace_config_path,
    write_workspace_config,
)
from revengine.domain import rules
from revengine.domain.models import Score
from revengine.domain.rules import ValidationError
from revengine.domain.ruleset import RuleSetError, load_rule_set
from revengine.domain.stages import TaskStatus
from revengine.observability import setup_logging
from revengine.services import constituents, interactions, routing, scoring, work_queue
from revengine.services.events import EventLogger
from revengine.services.interactions import InteractionError
from revengine.services.routing import NoMatchingRuleError
from revengine.store.migrations import SchemaError
from revengine.store.sqlite import SqliteStore

app = typer.Typer(help="Revenue engine CLI")
workspace_app = typer.Typer(help="Workspace management")
schema_app = typer.Typer(help="Schema operations")
constituent_app = typer.Typer(help="Constituent records")
interaction_app = typer.Typer(help="Interaction history")
opportunity_app = typer.Typer(help="Opportunities")
proposal_app = typer.Typer(help="Proposals")
score_app = typer.Typer(help="Constituent scoring")
queue_app = typer.Typer(help="Task work queue")
rules_app = typer.Typer(help="Routing and collision rules")

app.add_typer(workspace_app, name="workspace")
app.add_typer(schema_app, name="schema")
app.add_typer(constituent_app, name="constituent")
app.add_typer(interaction_app, name="interaction")
app.add_typer(opportunity_app, name="opportunity")
app.add_typer(proposal_app, name="proposal")
app.add_typer(score_app, name="score")
app.add_typer(queue_app, name="queue")
app.add_typer(rules_app, name="rules")

SCHEMA_PATH = Path("resources/schema/canonical.yaml")

# Exit code for outcomes a script may retry or re-poll (lost claim, not owner).
CONFLICT_EXIT_CODE = 2


@app.callback()
def version_callback(version: bool = typer.Option(False, "--version", help="Show version and exit.")):
    if version:
        typer.echo(__version__)
        raise typer.Exit()


@app.command("init")
def init() -> None:
    """Initialize the workspaces directory."""
    ensure_workspaces_dir()
    typer.echo("Initialized workspaces directory.")


@workspace_app.command("add")
def workspace_add(
    name: str = typer.Argument(...),
    use: bool = typer.Option(True, "--use/--no-use", help="Set as current workspace."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing workspace config if it exists."
    ),
) -> None:
    config_path = workspace_config_path(name)
    if config_path.exists() and not force:
        raise typer.BadParameter(
            f"Workspace already exists: {config_path}. Use --force to overwrite."
        )
    config_path = write_workspace_config(name)
    if use:
        set_current_workspace(name)
    typer.echo(f"Workspace created: {config_path}")


@workspace_app.command("use")
def workspace_use(name: str = typer.Argument(...)) -> None:
    if not workspace_config_path(name).exists():
        raise typer.BadParameter(f"Workspace config not found: {workspace_config_path(name)}")
    set_current_workspace(name)
    typer.echo(f"Active workspace: {name}")


@schema_app.command("apply")
def schema_apply() -> None:
    ws = _load_workspace()
    try:
        _store(ws).apply_schema(SCHEMA_PATH)
    except (SchemaError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    typer.echo("Applied schema to local SQLite.")


@constituent_app.command("add")
def constituent_add(
    first_name: str = typer.Option(..., "--first"),
    last_name: str = typer.Option(..., "--last"),
    email: str | None = typer.Option(None, "--email"),
    donor: bool = typer.Option(False, "--donor"),
    ticket_holder: bool = typer.Option(False, "--ticket-holder"),
    corporate: bool = typer.Option(False, "--corporate"),
    lifetime_giving: float = typer.Option(0.0, "--lifetime-giving"),
    lifetime_ticket_spend: float = typer.Option(0.0, "--lifetime-ticket-spend"),
    sport: str | None = typer.Option(None, "--sport"),
) -> None:
    ws = _load_workspace()
    try:
        constituent_id = constituents.add_constituent(
            _store(ws),
            first_name=first_name,
            last_name=last_name,
            email=email,
            is_donor=donor,
            is_ticket_holder=ticket_holder,
            is_corporate=corporate,
            lifetime_giving=lifetime_giving,
            lifetime_ticket_spend=lifetime_ticket_spend,
            sport_affinity=sport,
        )
    except (ValidationError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created constituent: {constituent_id}")


@interaction_app.command("log")
def interaction_log(
    constituent_id: str = typer.Argument(...),
    interaction_type: str = typer.Option(..., "--type"),
    occurred_at: str | None = typer.Option(None, "--at", help="ISO 8601 timestamp."),
    opportunity_id: str | None = typer.Option(None, "--opportunity"),
    notes: str | None = typer.Option(None, "--notes"),
) -> None:
    ws = _load_workspace()
    try:
        interaction_id = interactions.log_interaction(
            _store(ws),
            constituent_id=constituent_id,
            interaction_type=interaction_type,
            occurred_at=rules.parse_datetime(occurred_at, "at"),
            opportunity_id=opportunity_id,
            notes=notes,
        )
    except (ValidationError, InteractionError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Logged interaction: {interaction_id}")


@opportunity_app.command("status")
def opportunity_status(
    opportunity_id: str = typer.Argument(...),
    status: str = typer.Argument(..., help="active, won, lost or paused"),
) -> None:
    """Record an outcome; lost opportunities feed the re-solicitation window."""
    ws = _load_workspace()
    try:
        constituents.set_opportunity_status(_store(ws), opportunity_id, status)
    except (ValidationError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"{opportunity_id}: {status}")


@proposal_app.command("add")
def proposal_add(
    opportunity_id: str = typer.Argument(...),
    amount: float = typer.Option(..., "--amount"),
    status: str = typer.Option("draft", "--status"),
) -> None:
    ws = _load_workspace()
    try:
        proposal_id = constituents.add_proposal(
            _store(ws), opportunity_id=opportunity_id, amount=amount, status=status
        )
    except (ValidationError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created proposal: {proposal_id}")


@score_app.command("run")
def score_run(
    constituent_id: Annotated[
        list[str] | None,
        typer.Option("--constituent", help="Score only these constituents (repeatable)."),
    ] = None,
    batch_size: int | None = typer.Option(None, "--batch-size"),
    as_of: str | None = typer.Option(None, "--as-of", help="YYYY-MM-DD, defaults to today."),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
    events: bool = typer.Option(True, "--events/--no-events"),
) -> None:
    """Score constituents in independently committed batches."""
    ws = _load_workspace()
    try:
        result = scoring.run_scoring(
            _store(ws),
            constituent_ids=constituent_id,
            batch_size=batch_size or ws.scoring.batch_size,
            as_of=rules.parse_date(as_of, "as-of"),
            deadline_seconds=ws.scoring.deadline_seconds,
            events=_event_logger(ws, enabled=events),
        )
    except (ValidationError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    typer.echo(
        f"Scored {result.scored}/{result.total} in {result.duration_ms} ms "
        f"({result.batches} batches)."
    )
    for error in result.errors:
        typer.echo(f"- {error.constituent_id}: {error.message}")
    if result.interrupted:
        typer.echo("Stopped early: scoring deadline exceeded.")


@score_app.command("show")
def score_show(
    constituent_id: str = typer.Argument(...),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
) -> None:
    ws = _load_workspace()
    try:
        row = scoring.get_latest_score(_store(ws), constituent_id)
    except sqlite3.Error as exc:
        _exit_with_error(str(exc))
    if row is None:
        _exit_with_error(f"No score for constituent: {constituent_id}")
    if json_output:
        typer.echo(json.dumps(dict(row), indent=2))
        return
    score = Score.from_row(row)
    touched = "never" if score.days_since_touch is None else f"{score.days_since_touch} days ago"
    typer.echo(f"As of {score.as_of_date.isoformat()} (last touch: {touched})")
    typer.echo(f"Renewal risk: {score.renewal_risk}")
    typer.echo(f"Ask readiness: {score.ask_readiness}")
    typer.echo(f"Ticket propensity: {score.ticket_propensity}")
    typer.echo(f"Corporate propensity: {score.corporate_propensity}")
    typer.echo(f"Capacity estimate: {score.capacity_estimate:,.2f}")


@app.command("route")
def route(
    opportunity_id: str | None = typer.Option(None, "--opportunity", help="Re-route an existing opportunity."),
    constituent_id: str | None = typer.Option(None, "--constituent"),
    opportunity_type: str | None = typer.Option(None, "--type"),
    amount: float | None = typer.Option(None, "--amount"),
    override: bool = typer.Option(False, "--override", help="Proceed despite blocking collisions."),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
    events: bool = typer.Option(True, "--events/--no-events"),
) -> None:
    """Route a new or existing opportunity to its owner roles."""
    ws = _load_workspace()
    if not opportunity_id and not (constituent_id and opportunity_type and amount is not None):
        raise typer.BadParameter(
            "Provide --opportunity, or --constituent with --type and --amount."
        )
    rule_set = _load_rules(ws)
    try:
        result = routing.route_opportunity(
            _store(ws),
            rule_set,
            opportunity_id=opportunity_id,
            constituent_id=constituent_id,
            opportunity_type=opportunity_type,
            amount=amount,
            override=override,
            events=_event_logger(ws, enabled=events),
        )
    except (ValidationError, NoMatchingRuleError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        for collision in result.collisions:
            typer.echo(f"[{collision.action}] {collision.rule_id}: {collision.message}")
        if result.blocked:
            typer.echo("Blocked: resolve the collision or re-run with --override.")
        else:
            secondary = ", ".join(result.secondary_owner_roles) or "-"
            typer.echo(
                f"{result.opportunity_id} -> {result.primary_owner_role} "
                f"(secondary: {secondary}, priority: {result.task_priority}, rule: {result.matched_rule})"
            )
            if result.task_id:
                typer.echo(f"Created task: {result.task_id}")
            elif not result.changed:
                typer.echo("Owner unchanged; no task created.")
    if result.blocked:
        raise typer.Exit(code=CONFLICT_EXIT_CODE)
    if result.task_error:
        _exit_with_error(f"Routed, but task creation failed: {result.task_error}")


@queue_app.command("list")
def queue_list(
    mode: str = typer.Option("combined", "--mode", help="user, role or combined"),
    user_id: str | None = typer.Option(None, "--user"),
    role: Annotated[list[str] | None, typer.Option("--role", help="Repeatable.")] = None,
    status: str = typer.Option(TaskStatus.PENDING.value, "--status", help="Task status or 'all'."),
    page: int = typer.Option(1, "--page"),
    page_size: int = typer.Option(50, "--page-size"),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
) -> None:
    ws = _load_workspace()
    try:
        result = work_queue.get_work_queue(
            _store(ws),
            mode=mode,
            user_id=user_id,
            roles=role,
            status=status,
            page=page,
            page_size=page_size,
        )
    except (ValidationError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    if not result.tasks:
        typer.echo("No tasks.")
        return
    for task in result.tasks:
        due = task.due_at.date().isoformat() if task.due_at else "-"
        owner = task.assigned_user_id or f"({task.assigned_role})"
        typer.echo(
            f"{task.task_id} | {task.priority} | {task.task_type} | {due} | {owner} | {task.description}"
        )
    typer.echo(f"Page {result.page}/{result.total_pages} ({result.total} tasks)")


@queue_app.command("claim")
def queue_claim(
    task_id: str = typer.Argument(...),
    user_id: str = typer.Option(..., "--user"),
    events: bool = typer.Option(True, "--events/--no-events"),
) -> None:
    ws = _load_workspace()
    try:
        task = work_queue.claim_task(
            _store(ws), task_id, user_id, events=_event_logger(ws, enabled=events)
        )
    except (ValidationError, work_queue.TaskNotFoundError, sqlite3.Error) as exc:
        _exit_with_error(str(exc))
    except work_queue.TaskConflictError as exc:
        _exit_with_error(str(exc), code=CONFLICT_EXIT_CODE)
    typer.echo(f"Claimed {task.task_id} for {task.assigned_user_id}.")


@queue_app.command("status")
def queue_status(
    task_id: str = typer.Argument(...),
    new_status: str = typer.Argument(..., help="pending, in_progress, completed or cancelled"),
    user_id: str = typer.Option(..., "--user"),
    notes: str | None = typer.Option(None, "--notes"),
    events: bool = typer.Option(True, "--events/--no-events"),
) -> None:
    ws = _load_workspace()
    try:
        task = work_queue.update_task_status(
            _store(ws),
            task_id,
            user_id,
            new_status,
            notes=notes,
            events=_event_logger(ws, enabled=events),
        )
    except (
        ValidationError,
        work_queue.TaskNotFoundError,
        work_queue.TaskStateError,
        sqlite3.Error,
    ) as exc:
        _exit_with_error(str(exc))
    except work_queue.TaskForbiddenError as exc:
        _exit_with_error(str(exc), code=CONFLICT_EXIT_CODE)
    typer.echo(f"{task.task_id}: {task.status}")


@rules_app.command("check")
def rules_check() -> None:
    """Validate rule files and report types with no catch-all routing rule."""
    ws = _load_workspace()
    rule_set = _load_rules(ws)
    typer.echo(
        f"Loaded {len(rule_set.routing)} routing and {len(rule_set.collision)} collision rules."
    )
    missing = rule_set.missing_catch_all()
    if missing:
        _exit_with_error(f"No catch-all routing rule for: {', '.join(missing)}")
    typer.echo("Every opportunity type has a catch-all routing rule.")


def _load_workspace():
    try:
        ws = load_workspace()
    except WorkspaceError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc
    setup_logging(ws.logging.level, ws.logging.json)
    return ws


def _load_rules(ws):
    # Read on every invocation so rule edits apply without a restart.
    try:
        return load_rule_set(ws.rules.routing_path, ws.rules.collision_path)
    except RuleSetError as exc:
        _exit_with_error(str(exc))


def _store(ws) -> SqliteStore:
    return SqliteStore(ws.store.sqlite_path, timeout=ws.store.timeout_seconds)


def _exit_with_error(message: str, code: int = 1) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=code)


def _event_logger(ws, enabled: bool) -> EventLogger:
    return EventLogger(path=ws.events_path, workspace=ws.name, enabled=enabled)


if __name__ == "__main__":
    app()
