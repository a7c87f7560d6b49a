from __future__ import annotations

import contextlib
import json
import logging
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskgraph import __version__
from taskgraph.backends import DEFAULT_BACKEND, VALID_BACKENDS, DoltBackend
from taskgraph.config import Config, read_config, write_config
from taskgraph.db import apply_migrations, connect
from taskgraph.errors import VALIDATION_FAILED, TaskGraphError
from taskgraph.graph_export import format_dot_graph, format_mermaid_graph, get_graph_data
from taskgraph.models import (
    EDGE_TYPES,
    OWNERS,
    PLAN_STATUSES,
    RISKS,
    VALID_ACTORS,
)
from taskgraph.paths import DOLT_DIR_NAME, SQLITE_FILE_NAME, taskgraph_dir
from taskgraph.plan_import import import_plan
from taskgraph.plan_parser import PLAN_FORMATS
from taskgraph.queries import (
    DEFAULT_NEXT_LIMIT,
    list_plans,
    next_runnable_tasks,
    portfolio_hotspots,
    portfolio_overlaps,
    resolve_plan_id,
    show_task,
    status_overview,
)
from taskgraph.query import Backend
from taskgraph.tasks import (
    LINK_DIRECTIONS,
    add_edge,
    add_note,
    block_task,
    cancel_task,
    create_plan,
    create_task,
    finish_task,
    set_plan_priority,
    set_plan_status,
    split_task,
    start_task,
    unblock_task,
)

log = logging.getLogger(__name__)


@dataclass
class CliState:
    no_commit: bool = False
    verbose: bool = False


pass_state = click.make_pass_decorator(CliState, ensure=True)


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _error_payload(code: str, message: str) -> str:
    return json.dumps({"ok": False, "code": code, "error": message})


@contextlib.contextmanager
def _open_backend(state: CliState) -> Iterator[Backend]:
    config = read_config()
    with connect(config, no_commit=state.no_commit) as backend:
        yield backend


def _parse_json_list(raw: str | None, label: str) -> list[str] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TaskGraphError(VALIDATION_FAILED, f"Invalid JSON for {label}: {raw}", exc) from exc
    if not isinstance(value, list):
        raise TaskGraphError(VALIDATION_FAILED, f"{label.capitalize()} must be a JSON array")
    return [str(item) for item in value]


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Usage errors and :class:`TaskGraphError` both become a
    ``{"ok": false, "code": ..., "error": ...}`` object on stdout and exit
    code 1. Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except TaskGraphError as e:
            log.debug("Command failed", exc_info=True)
            click.echo(_error_payload(e.code, e.message))
            if standalone_mode:
                raise SystemExit(1) from None
            return 1
        except click.ClickException as e:
            click.echo(_error_payload(VALIDATION_FAILED, e.format_message()))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--no-commit", is_flag=True, help="Apply changes without committing them.")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr.")
@click.pass_context
def main(ctx: click.Context, no_commit: bool, verbose: bool):
    """Plan and track agent work as a dependency graph of tasks.

    \b
    Quick start:
      tg init --backend sqlite                   Create .taskgraph/ in this directory
      tg import plans/feature.md --plan "Auth"   Load a markdown plan
      tg next                                    List tasks ready to start
      tg start TASK_ID                           Claim a runnable task
      tg done TASK_ID --evidence "tests pass"    Finish it

    \b
    Key concepts:
      plan    A named body of work holding tasks
      task    A unit of work moving todo -> doing -> done
      edge    "blocks" (ordering) or "relates" (informational) link
      event   Append-only history entry recorded on every change
    """
    ctx.obj = CliState(no_commit=no_commit, verbose=verbose)
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# -- init --


@main.command()
@click.option(
    "--backend",
    type=click.Choice(sorted(VALID_BACKENDS)),
    default=DEFAULT_BACKEND,
    show_default=True,
    help="Storage backend.",
)
@pass_state
def init(state: CliState, backend: str):
    """Create .taskgraph/config.json and the schema in the chosen backend."""
    base = taskgraph_dir()
    base.mkdir(parents=True, exist_ok=True)
    config = Config(backend=backend)
    created_repo = False
    if backend == "dolt":
        repo_path = base / DOLT_DIR_NAME
        created_repo = DoltBackend.init_repo(repo_path)
        config.dolt_repo_path = str(repo_path.resolve())
    else:
        config.sqlite_path = str((base / SQLITE_FILE_NAME).resolve())

    with connect(config, no_commit=state.no_commit) as db:
        apply_migrations(db)
    path = write_config(config)
    _emit(
        {
            "config_path": str(path),
            "backend": backend,
            "created_repo": created_repo,
            **config.to_dict(),
        }
    )


# -- plan --


@main.group()
def plan():
    """Create and manage plans."""


@plan.command("new")
@click.argument("title")
@click.option("--intent", default="", help="Why the plan exists.")
@click.option("--source", "source_path", default=None, help="Source document path.")
@click.option("--priority", type=int, default=0, show_default=True)
@pass_state
def plan_new(state: CliState, title: str, intent: str, source_path: str | None, priority: int):
    """Create a plan."""
    with _open_backend(state) as db:
        _emit(create_plan(db, title, intent, source_path, priority))


@plan.command("list")
@click.option("--status", type=click.Choice(PLAN_STATUSES), default=None)
@pass_state
def plan_list(state: CliState, status: str | None):
    """List plans, highest priority first."""
    with _open_backend(state) as db:
        _emit(list_plans(db, status))


@plan.command("status")
@click.argument("plan_ref")
@click.argument("status", type=click.Choice(PLAN_STATUSES))
@pass_state
def plan_status(state: CliState, plan_ref: str, status: str):
    """Set a plan's status (PLAN_REF is an id or title)."""
    with _open_backend(state) as db:
        _emit(set_plan_status(db, resolve_plan_id(db, plan_ref), status))


@plan.command("priority")
@click.argument("plan_ref")
@click.argument("priority", type=int)
@pass_state
def plan_priority(state: CliState, plan_ref: str, priority: int):
    """Set a plan's priority; higher runs first in `tg next`."""
    with _open_backend(state) as db:
        _emit(set_plan_priority(db, resolve_plan_id(db, plan_ref), priority))


# -- task --


@main.group()
def task():
    """Create tasks."""


@task.command("new")
@click.argument("title")
@click.option("--plan", "plan_ref", required=True, help="Parent plan id or title.")
@click.option("--feature", "feature_key", default=None, help="Feature key for portfolio views.")
@click.option("--area", default=None, help="Area of the task (e.g. frontend, backend).")
@click.option("--acceptance", default=None, help="JSON array of acceptance criteria.")
@click.option("--intent", default=None)
@click.option("--owner", type=click.Choice(OWNERS), default="agent", show_default=True)
@click.option("--risk", type=click.Choice(RISKS), default="low", show_default=True)
@click.option("--estimate", "estimate_mins", type=click.IntRange(min=0), default=None)
@pass_state
def task_new(
    state: CliState,
    title: str,
    plan_ref: str,
    feature_key: str | None,
    area: str | None,
    acceptance: str | None,
    intent: str | None,
    owner: str,
    risk: str,
    estimate_mins: int | None,
):
    """Create a task in a plan."""
    criteria = _parse_json_list(acceptance, "acceptance criteria")
    with _open_backend(state) as db:
        result = create_task(
            db,
            resolve_plan_id(db, plan_ref),
            title,
            feature_key=feature_key,
            area=area,
            acceptance=criteria,
            intent=intent,
            owner=owner,
            risk=risk,
            estimate_mins=estimate_mins,
        )
    _emit(result)


# -- edge --


@main.group()
def edge():
    """Manage dependency edges."""


@edge.command("add")
@click.argument("from_task_id")
@click.argument("edge_type", metavar="TYPE", type=click.Choice(EDGE_TYPES))
@click.argument("to_task_id")
@click.option("--reason", default=None)
@pass_state
def edge_add(
    state: CliState, from_task_id: str, edge_type: str, to_task_id: str, reason: str | None
):
    """Add FROM_TASK_ID TYPE TO_TASK_ID (e.g. `A blocks B`)."""
    with _open_backend(state) as db:
        _emit(add_edge(db, from_task_id, edge_type, to_task_id, reason))


# -- lifecycle --


@main.command()
@click.argument("task_id")
@click.option("--actor", type=click.Choice(sorted(VALID_ACTORS)), default="agent")
@pass_state
def start(state: CliState, task_id: str, actor: str):
    """Start a runnable task (todo with every blocker finished)."""
    with _open_backend(state) as db:
        _emit(start_task(db, task_id, actor))


@main.command()
@click.argument("task_id")
@click.option("--evidence", default="", help="Evidence of completion.")
@click.option("--checks", default=None, help="JSON value describing acceptance checks.")
@click.option("--force", is_flag=True, help="Finish even if the task is not in 'doing'.")
@click.option("--actor", type=click.Choice(sorted(VALID_ACTORS)), default="agent")
@pass_state
def done(
    state: CliState, task_id: str, evidence: str, checks: str | None, force: bool, actor: str
):
    """Mark a task done."""
    with _open_backend(state) as db:
        _emit(finish_task(db, task_id, evidence, checks, force=force, actor=actor))


@main.command()
@click.argument("task_id")
@click.option("--on", "blocker_task_id", required=True, help="Id of the blocking task.")
@click.option("--reason", default=None)
@pass_state
def block(state: CliState, task_id: str, blocker_task_id: str, reason: str | None):
    """Block TASK_ID on another task."""
    with _open_backend(state) as db:
        _emit(block_task(db, task_id, blocker_task_id, reason))


@main.command()
@click.argument("task_id")
@pass_state
def unblock(state: CliState, task_id: str):
    """Return a blocked task to todo once its blockers are finished."""
    with _open_backend(state) as db:
        _emit(unblock_task(db, task_id))


@main.command()
@click.argument("task_id")
@click.option("--reason", default=None)
@pass_state
def cancel(state: CliState, task_id: str, reason: str | None):
    """Cancel a task."""
    with _open_backend(state) as db:
        _emit(cancel_task(db, task_id, reason))


@main.command()
@click.argument("task_id")
@click.option("--into", "titles", required=True, help="Pipe-separated titles ('A|B').")
@click.option("--keep-original/--cancel-original", default=True, show_default=True)
@click.option(
    "--link-direction",
    type=click.Choice(LINK_DIRECTIONS),
    default="original-to-new",
    show_default=True,
)
@pass_state
def split(state: CliState, task_id: str, titles: str, keep_original: bool, link_direction: str):
    """Decompose a task into new tasks linked by `relates` edges."""
    with _open_backend(state) as db:
        result = split_task(
            db,
            task_id,
            titles.split("|"),
            keep_original=keep_original,
            link_direction=link_direction,
        )
    _emit(result)


@main.command()
@click.argument("task_id")
@click.option("--msg", "message", required=True, help="Note text.")
@click.option("--agent", default=None, help="Agent identifier.")
@click.option("--actor", type=click.Choice(sorted(VALID_ACTORS)), default="agent")
@pass_state
def note(state: CliState, task_id: str, message: str, agent: str | None, actor: str):
    """Append a note event to a task."""
    with _open_backend(state) as db:
        _emit(add_note(db, task_id, message, actor, agent))


# -- reads --


@main.command("next")
@click.option("--plan", "plan_ref", default=None, help="Filter by plan id or title.")
@click.option("--limit", type=click.IntRange(min=1), default=DEFAULT_NEXT_LIMIT, show_default=True)
@pass_state
def next_(state: CliState, plan_ref: str | None, limit: int):
    """List runnable tasks, best candidates first."""
    with _open_backend(state) as db:
        _emit(next_runnable_tasks(db, plan_ref, limit))


@main.command()
@click.argument("task_id")
@pass_state
def show(state: CliState, task_id: str):
    """Show a task with its blockers, dependents and recent events."""
    with _open_backend(state) as db:
        _emit(show_task(db, task_id))


@main.command()
@click.option("--plan", "plan_ref", default=None, help="Limit to one plan (id or title).")
@pass_state
def status(state: CliState, plan_ref: str | None):
    """Task counts by status per plan."""
    with _open_backend(state) as db:
        _emit(status_overview(db, plan_ref))


@main.command("import")
@click.argument("file_path", type=click.Path(dir_okay=False))
@click.option("--plan", "plan_ref", required=True, help="Plan id or title (created if missing).")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(PLAN_FORMATS),
    default="legacy",
    show_default=True,
    help="legacy: TASK:/TITLE:/BLOCKED_BY: lines. cursor: YAML frontmatter with todos.",
)
@pass_state
def import_(state: CliState, file_path: str, plan_ref: str, fmt: str):
    """Import a plan document; re-importing updates tasks in place."""
    with _open_backend(state) as db:
        _emit(import_plan(db, Path(file_path), plan_ref, fmt))


# -- export --


@main.group()
def export():
    """Render the task graph as text."""


def _graph_text(state: CliState, plan_ref: str | None, feature_key: str | None, fmt: str) -> str:
    with _open_backend(state) as db:
        plan_id = resolve_plan_id(db, plan_ref) if plan_ref else None
        data = get_graph_data(db, plan_id, feature_key)
    if fmt == "dot":
        return format_dot_graph(data["nodes"], data["edges"])
    return format_mermaid_graph(data["nodes"], data["edges"])


@export.command("mermaid")
@click.option("--plan", "plan_ref", default=None, help="Filter by plan id or title.")
@click.option("--feature", "feature_key", default=None, help="Filter by feature key.")
@pass_state
def export_mermaid(state: CliState, plan_ref: str | None, feature_key: str | None):
    """Print a Mermaid `graph TD` diagram."""
    click.echo(_graph_text(state, plan_ref, feature_key, "mermaid"), nl=False)


@export.command("dot")
@click.option("--plan", "plan_ref", default=None, help="Filter by plan id or title.")
@click.option("--feature", "feature_key", default=None, help="Filter by feature key.")
@pass_state
def export_dot(state: CliState, plan_ref: str | None, feature_key: str | None):
    """Print a Graphviz DOT digraph."""
    click.echo(_graph_text(state, plan_ref, feature_key, "dot"), nl=False)


# -- portfolio --


@main.group()
def portfolio():
    """Cross-plan views by feature and area."""


@portfolio.command("overlaps")
@click.option("--min", "min_features", type=int, default=2, show_default=True)
@pass_state
def portfolio_overlaps_cmd(state: CliState, min_features: int):
    """Tasks related across features, and areas shared by several features."""
    with _open_backend(state) as db:
        _emit(portfolio_overlaps(db, min_features))


@portfolio.command("hotspots")
@pass_state
def portfolio_hotspots_cmd(state: CliState):
    """Task counts per area and areas touched by more than one feature."""
    with _open_backend(state) as db:
        _emit(portfolio_hotspots(db))


# -- mcp --


@main.command()
def mcp():
    """Serve the task tools over MCP (stdio)."""
    from taskgraph.mcp_server import run

    run()
