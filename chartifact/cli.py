"""chartifact CLI: version-controlled channel artifacts across environments."""

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chartifact import __version__
from chartifact.config import ProcessSettings
from chartifact.errors import ChartifactError
from chartifact.utils.logging import configure_logging

console = Console()


def _controller(ctx: click.Context, deployer=None):
    from chartifact.controller import ArtifactController

    return ArtifactController(
        ctx.obj["repo"],
        approvals_dir=ctx.obj["approvals_dir"],
        deployer=deployer,
    )


def _run(coro):
    """Run a controller coroutine, turning chartifact errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except ChartifactError as e:
        console.print(f"[red]Error:[/] {e}")
        raise SystemExit(1) from e


@click.group()
@click.version_option(version=__version__)
@click.option("--repo", "-r", default=None, help="Artifact repository (default: $CHARTIFACT_REPO or .)")
@click.option("--approvals-dir", default=None, help="Approval record directory (default: ~/.chartifact/approvals)")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default: $CHARTIFACT_LOG_LEVEL)")
@click.option("--json-logs", is_flag=True, help="Emit log events as JSON lines")
@click.pass_context
def main(ctx: click.Context, repo: str | None, approvals_dir: str | None, log_level: str | None, json_logs: bool):
    """chartifact: integration channels as version-controlled artifacts.

    Export live channel documents into a git tree, import them back with
    environment variables bound, detect drift and promote channels between
    environments under an approval gate.
    """
    settings = ProcessSettings.from_environ()
    configure_logging(log_level or settings.log_level, json_output=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["repo"] = repo or settings.repo
    ctx.obj["approvals_dir"] = approvals_dir


# ── Repository ───────────────────────────────────────────────────────


@main.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the artifact repository and its .chartifact.yaml."""
    config = _run(_controller(ctx).initialize())
    console.print(f"\n[bold blue]chartifact[/] Initialized {ctx.obj['repo']}")
    console.print(f"  Environments: {' -> '.join(config.environment_names)}")


# ── Export / Import ──────────────────────────────────────────────────


@main.command(name="export")
@click.argument("documents", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--mask/--no-mask", default=None, help="Mask credentials (default from .chartifact.yaml)")
@click.option("--message", "-m", default=None, help="Commit message")
@click.pass_context
def export_cmd(ctx: click.Context, documents: tuple, mask: bool | None, message: str | None):
    """Decompose channel documents into the artifact tree and commit."""
    texts = [Path(p).read_text(encoding="utf-8") for p in documents]
    results = _run(_controller(ctx).export_all(texts, mask_secrets=mask, message=message))

    table = Table(title=f"Exported channels ({len(results)})")
    table.add_column("Source", style="dim")
    table.add_column("Channel", style="cyan")
    table.add_column("Files", justify="right")
    table.add_column("Masked", justify="right")
    table.add_column("Status")
    for path, item in zip(documents, results):
        if item.ok:
            value = item.value
            table.add_row(path, value.channel_name, str(len(value.files)), str(len(value.masked)), "[green]OK[/]")
        else:
            table.add_row(path, "", "", "", f"[red]{item.error}[/]")
    console.print(table)
    if not all(item.ok for item in results):
        raise SystemExit(1)


@main.command(name="import")
@click.argument("channel", required=False)
@click.option("--env", "-e", "environment", default=None, help="Environment whose variables are bound")
@click.option("--output", "-o", default=None, help="File (one channel) or directory (all channels)")
@click.option("--strict", is_flag=True, help="Fail on unresolved variables")
@click.pass_context
def import_cmd(ctx: click.Context, channel: str | None, environment: str | None, output: str | None, strict: bool):
    """Assemble stored channels back into documents.

    With CHANNEL (id, name or directory) one document is printed or written;
    without it every channel is written into the --output directory.
    """
    controller = _controller(ctx)
    if channel:
        result = _run(controller.import_channel(channel, environment, strict=strict))
        for name in result.unresolved:
            console.print(f"  [yellow]![/] Unresolved variable: {name}")
        if output:
            Path(output).write_text(result.document, encoding="utf-8")
            console.print(f"[green]Channel written to:[/] {output}")
        else:
            click.echo(result.document)
        return

    if not output:
        raise click.UsageError("--output directory is required when importing every channel")
    out_dir = Path(output)
    out_dir.mkdir(parents=True, exist_ok=True)
    results = _run(controller.import_all(environment, strict=strict))
    failed = 0
    for item in results:
        if item.ok:
            (out_dir / f"{item.value.channel_dir}.xml").write_text(item.value.document, encoding="utf-8")
            console.print(f"  [green]v[/] {item.value.channel_name}")
        else:
            failed += 1
            console.print(f"  [red]x[/] {item.item}: {item.error}")
    if failed:
        raise SystemExit(1)


# ── Analysis ─────────────────────────────────────────────────────────


@main.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.option("--channel", "-c", default=None, help="Stored channel to compare with (default: the document's id)")
@click.option("--env", "-e", "environment", default=None, help="Environment tree to compare with")
@click.pass_context
def diff(ctx: click.Context, document: str, channel: str | None, environment: str | None):
    """Show drift between a live channel document and its stored artifact."""
    from chartifact.artifact.diff import format_for_cli

    live = Path(document).read_text(encoding="utf-8")
    result = _run(_controller(ctx).diff_channel(channel, live, environment))
    console.print(format_for_cli(result), highlight=False)


@main.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def secrets(ctx: click.Context, document: str):
    """List connector properties that look like credentials."""
    try:
        found = _controller(ctx).detect_secrets(Path(document).read_text(encoding="utf-8"))
    except ChartifactError as e:
        console.print(f"[red]Error:[/] {e}")
        raise SystemExit(1) from e

    if not found:
        console.print("[green]No credential-shaped properties found.[/]")
        return
    table = Table(title=f"Sensitive properties ({len(found)})")
    table.add_column("Path", style="cyan")
    table.add_column("Reason")
    for item in found:
        table.add_row(item.path, item.reason)
    console.print(table)


@main.command()
@click.option("--env", "-e", "environment", default=None, help="Environment tree to read")
@click.option("--impact", default=None, help="Show channels impacted by a change to this channel id")
@click.pass_context
def graph(ctx: click.Context, environment: str | None, impact: str | None):
    """Show inter-channel dependencies and the dependency-ordered sequence."""
    dep_graph = _run(_controller(ctx).get_dependency_graph(environment))
    if impact:
        impacted = dep_graph.impacted_by(impact)
        if not impacted:
            console.print(f"[green]No channels depend on {impact}.[/]")
        for channel_id in impacted:
            console.print(f"  [cyan]{channel_id}[/] {dep_graph.names.get(channel_id, '')}")
        return

    table = Table(title=f"Channels ({len(dep_graph.nodes)})")
    table.add_column("Order", style="dim", justify="right")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Depends on")
    sort = dep_graph.sort()
    for i, channel_id in enumerate(sort.order):
        deps = ", ".join(dep_graph.dependencies_of(channel_id))
        table.add_row(str(i + 1), channel_id, dep_graph.names.get(channel_id, ""), deps)
    console.print(table)
    if sort.has_cycles:
        console.print(f"[yellow]![/] Dependency cycle: {', '.join(sort.cycles)}")


@main.command()
@click.option("--env", "-e", "environment", default=None, help="Environment whose variables are shown")
@click.pass_context
def variables(ctx: click.Context, environment: str | None):
    """Show every known variable, its winning value and where it came from."""
    var_map = _run(_controller(ctx).get_variable_map(environment))
    if not var_map:
        console.print("[yellow]No variables defined.[/]")
        return
    table = Table(title=f"Variables ({environment or 'base'})")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    table.add_column("Source", style="dim")
    for name, var in sorted(var_map.items()):
        table.add_row(name, var.value, var.source.value)
    console.print(table)


# ── Delta ────────────────────────────────────────────────────────────


@main.command()
@click.option("--from", "from_ref", default="HEAD~1", help="Older revision")
@click.option("--to", "to_ref", default="HEAD", help="Newer revision")
@click.option("--env", "-e", "environment", default=None, help="Environment tree to inspect")
@click.option("--cascade", is_flag=True, help="Treat environment file changes as affecting every channel")
@click.pass_context
def delta(ctx: click.Context, from_ref: str, to_ref: str, environment: str | None, cascade: bool):
    """List the channels changed between two revisions."""
    from chartifact.git.delta import format_for_cli

    result = _run(_controller(ctx).detect_delta(from_ref, to_ref, environment, cascade))
    console.print(format_for_cli(result), highlight=False)


@main.command(name="deploy-delta")
@click.option("--from", "from_ref", default="HEAD~1", help="Older revision")
@click.option("--to", "to_ref", default="HEAD", help="Newer revision")
@click.option("--env", "-e", "environment", default=None, help="Environment whose tree and variables are used")
@click.option("--output", "-o", required=True, help="Directory the assembled documents are written to")
@click.option("--strict", is_flag=True, help="Fail a channel on unresolved variables")
@click.pass_context
def deploy_delta(ctx: click.Context, from_ref: str, to_ref: str, environment: str | None, output: str, strict: bool):
    """Assemble only the channels changed between two revisions."""
    out_dir = Path(output)
    out_dir.mkdir(parents=True, exist_ok=True)

    async def write_document(channel_id: str, document: str) -> None:
        await asyncio.to_thread((out_dir / f"{channel_id}.xml").write_text, document, "utf-8")

    controller = _controller(ctx, deployer=write_document)
    result = _run(controller.deploy_delta(from_ref, to_ref, environment, strict=strict))

    console.print(f"\n[bold blue]chartifact[/] {result.delta.summary}\n")
    for item in result.deployments:
        if item.error:
            console.print(f"  [red]x[/] {item.channel_dir}: {item.error}")
        else:
            console.print(f"  [green]v[/] {item.channel_dir} ({item.channel_id})")
            for name in item.unresolved:
                console.print(f"      [yellow]![/] Unresolved variable: {name}")
    for channel_id in result.deleted:
        console.print(f"  [yellow]-[/] {channel_id} deleted; not deployed")
    if not result.success:
        raise SystemExit(1)


# ── Promotion ────────────────────────────────────────────────────────


@main.command()
@click.argument("source_env")
@click.argument("target_env")
@click.option("--channel", "-c", "channels", multiple=True, help="Channel id, name or directory (default: all)")
@click.option("--approved-by", default="", help="Record an approval by this approver")
@click.option("--requested-by", default="", help="Who is asking for the promotion")
@click.option("--force", is_flag=True, help="Bypass approval and compatibility blocks (still logged)")
@click.option("--dry-run", is_flag=True, help="Validate and show the plan without writing")
@click.option("--push", is_flag=True, help="Push the promotion commit")
@click.option("--notes", default="", help="Notes stored with the approval record")
@click.pass_context
def promote(
    ctx: click.Context,
    source_env: str,
    target_env: str,
    channels: tuple,
    approved_by: str,
    requested_by: str,
    force: bool,
    dry_run: bool,
    push: bool,
    notes: str,
):
    """Promote channels from SOURCE_ENV into TARGET_ENV."""
    from chartifact.promotion.models import PromotionRequest

    request = PromotionRequest(
        source_env=source_env,
        target_env=target_env,
        channel_ids=list(channels),
        requested_by=requested_by,
        approved_by=approved_by,
        force=force,
        dry_run=dry_run,
        push=push,
        notes=notes,
    )
    result = _run(_controller(ctx).promote(request))

    title = f"{source_env} -> {target_env}" + (" (dry run)" if dry_run else "")
    table = Table(title=title)
    table.add_column("Channel", style="cyan")
    table.add_column("Id", style="dim")
    table.add_column("Status")
    table.add_column("Changes", justify="right")
    for entry in result.channel_results:
        color = "green" if entry.ok else "red"
        table.add_row(entry.channel_name, entry.channel_id, f"[{color}]{entry.status.value}[/]", str(entry.change_count))
    if result.channel_results:
        console.print(table)

    for w in result.warnings:
        console.print(f"  [yellow]![/] {w}")
    for e in result.errors:
        console.print(f"  [red]x[/] {e}")
    for reason in result.block_reasons:
        console.print(f"  [red]-[/] {reason}")

    status = "[green]" if result.success else "[red]"
    summary = f"State: {status}{result.state.value}[/]"
    if result.approval_id:
        summary += f"\nApproval: {result.approval_id}"
    if result.commit_sha:
        summary += f"\nCommit: {result.commit_sha[:10]}"
    console.print(Panel(summary, title="Promotion"))
    if not result.success:
        raise SystemExit(1)


@main.command()
@click.option("--status", "-s", default=None, type=click.Choice(["pending", "approved", "rejected"]))
@click.pass_context
def approvals(ctx: click.Context, status: str | None):
    """List promotion approval records."""
    records = _controller(ctx).approvals.list_records(status=status)
    if not records:
        console.print("[yellow]No approval records.[/]")
        return

    table = Table(title=f"Approvals ({len(records)})")
    table.add_column("Id", style="cyan")
    table.add_column("Route")
    table.add_column("Channels", justify="right")
    table.add_column("Status")
    table.add_column("By")
    table.add_column("Outcome", style="dim")
    for record in records:
        route = f"{record.source_env} -> {record.target_env}"
        by = record.approved_by or record.requested_by
        status_text = f"{record.status} (forced)" if record.forced else record.status
        table.add_row(record.id, route, str(len(record.channel_ids)), status_text, by, record.outcome)
    console.print(table)


@main.command()
@click.argument("approval_id")
@click.option("--by", "approver", required=True, help="Approver name")
@click.option("--comment", default="", help="Comment stored with the decision")
@click.pass_context
def approve(ctx: click.Context, approval_id: str, approver: str, comment: str):
    """Approve a pending promotion request."""
    record = _controller(ctx).approvals.approve(approval_id, approver, comment)
    _print_decision(approval_id, record)


@main.command()
@click.argument("approval_id")
@click.option("--by", "approver", required=True, help="Approver name")
@click.option("--comment", default="", help="Comment stored with the decision")
@click.pass_context
def reject(ctx: click.Context, approval_id: str, approver: str, comment: str):
    """Reject a pending promotion request."""
    record = _controller(ctx).approvals.reject(approval_id, approver, comment)
    _print_decision(approval_id, record)


def _print_decision(approval_id: str, record) -> None:
    if record is None:
        console.print(f"[red]No approval record {approval_id}.[/]")
        raise SystemExit(1)
    console.print(f"  {record.id}: [bold]{record.status}[/] by {record.approved_by or '-'}")


if __name__ == "__main__":
    main()
