"""Goldfish CLI - checkpoints, recall and plans from the terminal."""

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from goldfish import __version__
from goldfish.checkpoints import format_timestamp, list_day_files
from goldfish.config import GoldfishConfig
from goldfish.core import Goldfish
from goldfish.errors import LockTimeoutError, PlanNotFoundError, ValidationError, format_error
from goldfish.logging import configure_logging, configure_ops_log
from goldfish.memories import MEMORY_SOURCES, MEMORY_TYPES
from goldfish.plans import (
    complete_plan,
    delete_plan,
    get_active_plan,
    get_plan,
    list_plans,
    save_plan,
    set_active_plan,
)
from goldfish.recall import RecallOptions, parse_since
from goldfish.workspace import SCOPE_ALL, checkpoints_dir, list_workspaces, resolve_workspace

console = Console()

# Failures reported to the user rather than as a traceback
USER_ERRORS = (ValidationError, LockTimeoutError, PlanNotFoundError, ValueError)


def _fail(error: BaseException) -> None:
    console.print(f"[red]{escape(format_error(error))}[/red]")
    sys.exit(1)


def _config(ctx: click.Context) -> GoldfishConfig:
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = GoldfishConfig.load(ctx.obj.get("root"))
        except ValueError as e:
            _fail(e)
    return ctx.obj["config"]


def _runtime(ctx: click.Context) -> Goldfish:
    """Build the runtime once per invocation; closed when the command ends."""
    if "runtime" not in ctx.obj:
        runtime = Goldfish(_config(ctx))
        ctx.obj["runtime"] = runtime
        ctx.call_on_close(runtime.close)
    return ctx.obj["runtime"]


def _time(ts) -> str:
    return format_timestamp(ts)[:16].replace("T", " ")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="GOLDFISH_HOME",
    help="Storage root (default: ~/.goldfish)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx, root, verbose):
    """Goldfish: checkpoint memory for AI coding agents."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["root"] = root


@main.command()
@click.argument("description")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--workspace", "-w", default="current", help="Workspace name (default: current)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def checkpoint(ctx, description, tags, workspace, as_json):
    """Save a checkpoint."""
    runtime = _runtime(ctx)
    try:
        saved = runtime.save_checkpoint(workspace, description, tags=list(tags))
    except USER_ERRORS as e:
        _fail(e)

    if as_json:
        print(json.dumps(saved.to_dict()))
        return

    console.print(f"[green]✓[/green] Checkpoint saved to {resolve_workspace(workspace)}")
    console.print(f"  [dim]{_time(saved.timestamp)} UTC[/dim]")
    if saved.git_branch:
        console.print(f"  [dim]Branch: {escape(saved.git_branch)}[/dim]")


@main.command("recall")
@click.option("--workspace", "-w", default="current", help="current, all, or a workspace name")
@click.option("--since", help='Relative ("2h", "30m", "3d") or absolute start')
@click.option("--days", type=int, help="Look back N days (default: 2)")
@click.option("--from", "from_", help="Range start (date or ISO timestamp)")
@click.option("--to", help="Range end (date or ISO timestamp)")
@click.option("--search", "-s", help="Search text")
@click.option("--limit", "-n", type=int, help="Max checkpoints (default: 10, 0 = plan only)")
@click.option("--full", is_flag=True, help="Full descriptions and git metadata")
@click.option("--semantic", is_flag=True, help="Rank by embedding similarity")
@click.option("--min-similarity", type=float, help="Minimum similarity for semantic search")
@click.option("--distill", is_flag=True, help="Summarize results with an LLM CLI")
@click.option(
    "--distill-provider",
    type=click.Choice(["auto", "claude", "gemini", "none"]),
    help="LLM CLI for --distill",
)
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def recall_cmd(
    ctx,
    workspace,
    since,
    days,
    from_,
    to,
    search,
    limit,
    full,
    semantic,
    min_similarity,
    distill,
    distill_provider,
    as_json,
):
    """Recall recent checkpoints."""
    options = RecallOptions(
        workspace=workspace,
        since=since,
        days=days,
        from_=from_,
        to=to,
        search=search,
        limit=limit,
        full=full,
        semantic=semantic,
        min_similarity=min_similarity,
        distill=distill,
        distill_provider=distill_provider,
    )
    runtime = _runtime(ctx)
    try:
        result = runtime.recall(options)
    except USER_ERRORS as e:
        _fail(e)

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    if result.active_plan is not None:
        console.print(f"[bold]Active plan:[/bold] {escape(result.active_plan.title)}")
        console.print()

    if result.distilled is not None:
        console.print(f"[bold]Summary[/bold] [dim]({result.distilled['provider']})[/dim]")
        console.print(escape(result.distilled["summary"]))
        console.print()

    if not result.entries:
        console.print("[yellow]No checkpoints found.[/yellow]")
        return

    cross_workspace = result.workspaces is not None
    table = Table()
    table.add_column("TIME")
    if cross_workspace:
        table.add_column("WORKSPACE")
    table.add_column("DESCRIPTION")
    table.add_column("TAGS")
    if full:
        table.add_column("BRANCH")

    for entry in result.entries:
        cp = entry.checkpoint
        row = [_time(cp.timestamp)]
        if cross_workspace:
            row.append(entry.workspace)
        row.extend([escape(cp.description), escape(", ".join(cp.tags))])
        if full:
            row.append(escape(cp.git_branch or "-"))
        table.add_row(*row)

    console.print(table)
    if search:
        console.print(f"[dim]Search method: {result.search_method}[/dim]")


@main.command()
@click.argument("workspace", default="current")
@click.option("--all", "all_workspaces", is_flag=True, help="Sync every workspace")
@click.pass_context
def sync(ctx, workspace, all_workspaces):
    """Generate missing embeddings for semantic recall."""
    config = _config(ctx)
    configure_ops_log(config.root)
    runtime = _runtime(ctx)

    if not runtime.semantic_available:
        console.print(
            f"[yellow]Embedding provider {runtime.provider.name} unavailable - "
            "semantic search disabled[/yellow]"
        )
        return

    names = list_workspaces(runtime.root) if all_workspaces else [resolve_workspace(workspace)]
    for name in names:
        stats = runtime.sync_all(name)
        console.print(
            f"[green]✓[/green] {name}: {stats.generated} embedded, "
            f"{stats.already_embedded} current, {stats.failed} failed "
            f"[dim]({stats.duration_ms}ms)[/dim]"
        )


@main.command()
@click.argument("memory_type", metavar="TYPE", type=click.Choice(MEMORY_TYPES))
@click.argument("content")
@click.option(
    "--source", "-s", type=click.Choice(MEMORY_SOURCES), default="agent", help="Who is storing it"
)
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--workspace", "-w", default="current", help="Workspace name (default: current)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def store(ctx, memory_type, content, source, tags, workspace, as_json):
    """Store a typed memory (decision, bug-fix, insight, ...)."""
    runtime = _runtime(ctx)
    try:
        entry = runtime.store_memory(workspace, memory_type, source, content, tags=list(tags))
    except USER_ERRORS as e:
        _fail(e)

    if as_json:
        print(json.dumps({"memory": entry.memory.to_dict(), "filePath": entry.file_path, "line": entry.position}))
        return

    console.print(f"[green]✓[/green] Memory stored in {entry.file_path}:{entry.position}")


@main.command()
@click.option("--workspace", "-w", default="current", help="Workspace name (default: current)")
@click.option("--search", "-q", "query", help="Search text")
@click.option("--type", "types", multiple=True, type=click.Choice(MEMORY_TYPES), help="Memory type (repeatable)")
@click.option("--source", "sources", multiple=True, type=click.Choice(MEMORY_SOURCES), help="Source (repeatable)")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable, any matches)")
@click.option("--since", help='Relative ("2h", "3d") or absolute start')
@click.option("--limit", "-n", type=int, default=10, help="Max memories (default: 10)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def memories(ctx, workspace, query, types, sources, tags, since, limit, as_json):
    """List or search stored memories."""
    runtime = _runtime(ctx)
    try:
        start = parse_since(since) if since else None
        found = runtime.list_memories(
            workspace, query=query, types=types, sources=sources, tags=tags, since=start, limit=limit
        )
    except USER_ERRORS as e:
        _fail(e)

    if as_json:
        print(json.dumps([e.memory.to_dict() for e in found], indent=2))
        return

    if not found:
        console.print("[yellow]No memories found.[/yellow]")
        return

    table = Table()
    table.add_column("TIME")
    table.add_column("TYPE")
    table.add_column("CONTENT")
    table.add_column("TAGS")
    for entry in found:
        m = entry.memory
        table.add_row(_time(m.timestamp), m.type, escape(m.content), escape(", ".join(m.tags)))
    console.print(table)


@main.command()
@click.pass_context
def workspaces(ctx):
    """List workspaces."""
    config = _config(ctx)
    names = list_workspaces(config.root)
    if not names:
        console.print("[yellow]No workspaces found.[/yellow]")
        console.print("Save one with: goldfish checkpoint <description>")
        return

    table = Table()
    table.add_column("WORKSPACE")
    table.add_column("DAYS", justify="right")
    table.add_column("LAST LOG")
    table.add_column("ACTIVE PLAN")

    for name in names:
        days = list_day_files(checkpoints_dir(config.root, name))
        active = get_active_plan(config.root, name)
        table.add_row(
            name,
            str(len(days)),
            days[-1][0] if days else "-",
            escape(active.title) if active else "-",
        )

    console.print(table)


# ============================================================================
# Plans
# ============================================================================


@main.group()
def plan():
    """Manage plans."""
    pass


def _plan_workspace(ctx, workspace) -> tuple[Path, str]:
    config = _config(ctx)
    if workspace == SCOPE_ALL:
        _fail(ValidationError("Plans belong to a single workspace"))
    return config.root, resolve_workspace(workspace)


@plan.command("save")
@click.argument("title")
@click.option("--content", "-c", default="", help="Plan body (Markdown)")
@click.option("--file", "content_file", type=click.Path(exists=True, dir_okay=False), help="Read body from file")
@click.option("--id", "plan_id", help="Plan ID (default: slug of the title)")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--activate", is_flag=True, help="Make this the active plan")
@click.option("--workspace", "-w", default="current")
@click.pass_context
def plan_save(ctx, title, content, content_file, plan_id, tags, activate, workspace):
    """Create a plan."""
    root, ws = _plan_workspace(ctx, workspace)
    if content_file:
        content = Path(content_file).read_text(encoding="utf-8")
    try:
        saved = save_plan(
            root, ws, title, content, plan_id=plan_id, tags=list(tags), activate=activate
        )
    except USER_ERRORS as e:
        _fail(e)

    console.print(f"[green]✓[/green] Saved plan: {saved.id}")
    if activate:
        console.print("  [dim]Now active[/dim]")


@plan.command("list")
@click.option("--workspace", "-w", default="current")
@click.pass_context
def plan_list(ctx, workspace):
    """List plans, most recently updated first."""
    root, ws = _plan_workspace(ctx, workspace)
    plans = list_plans(root, ws)
    if not plans:
        console.print(f"[yellow]No plans in {ws}.[/yellow]")
        return

    active = get_active_plan(root, ws)
    table = Table()
    table.add_column("ID")
    table.add_column("TITLE")
    table.add_column("STATUS")
    table.add_column("UPDATED")
    for p in plans:
        marker = " *" if active is not None and active.id == p.id else ""
        table.add_row(f"{p.id}{marker}", escape(p.title), p.status, p.updated[:16].replace("T", " "))
    console.print(table)


@plan.command("show")
@click.argument("plan_id", required=False)
@click.option("--workspace", "-w", default="current")
@click.pass_context
def plan_show(ctx, plan_id, workspace):
    """Show a plan (default: the active one)."""
    root, ws = _plan_workspace(ctx, workspace)
    try:
        found = get_plan(root, ws, plan_id) if plan_id else get_active_plan(root, ws)
    except USER_ERRORS as e:
        _fail(e)
    if found is None:
        console.print(f"[yellow]Plan '{plan_id or 'active'}' not found[/yellow]")
        sys.exit(1)

    console.print(f"[bold]{escape(found.title)}[/bold] [dim]({found.id}, {found.status})[/dim]")
    if found.tags:
        console.print(f"[dim]Tags: {escape(', '.join(found.tags))}[/dim]")
    console.print()
    console.print(escape(found.content))


@plan.command("activate")
@click.argument("plan_id")
@click.option("--workspace", "-w", default="current")
@click.pass_context
def plan_activate(ctx, plan_id, workspace):
    """Make a plan the active one."""
    root, ws = _plan_workspace(ctx, workspace)
    try:
        set_active_plan(root, ws, plan_id)
    except USER_ERRORS as e:
        _fail(e)
    console.print(f"[green]✓[/green] Active plan: {plan_id}")


@plan.command("complete")
@click.argument("plan_id")
@click.option("--workspace", "-w", default="current")
@click.pass_context
def plan_complete(ctx, plan_id, workspace):
    """Mark a plan completed."""
    root, ws = _plan_workspace(ctx, workspace)
    try:
        complete_plan(root, ws, plan_id)
    except USER_ERRORS as e:
        _fail(e)
    console.print(f"[green]✓[/green] Completed plan: {plan_id}")


@plan.command("rm")
@click.argument("plan_id")
@click.option("--workspace", "-w", default="current")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def plan_rm(ctx, plan_id, workspace, force):
    """Delete a plan."""
    root, ws = _plan_workspace(ctx, workspace)
    if not force and not click.confirm(f"Delete plan '{plan_id}'?"):
        console.print("Cancelled.")
        return
    try:
        delete_plan(root, ws, plan_id)
    except USER_ERRORS as e:
        _fail(e)
    console.print(f"[green]✓[/green] Deleted plan: {plan_id}")


if __name__ == "__main__":
    main()
