"""Command-line interface for vm-workspaces.

Usage:
    vmws add dev --disk ~/vms/dev.qcow2 --key ~/.ssh/dev_ed25519
    vmws list
    vmws start dev          # Runs in the foreground; Ctrl-C stops the VM
    vmws stop dev
    vmws sweep              # Kill QEMU processes left behind by a crashed run
    vmws forget-host dev    # Drop the pinned SSH host key after a disk rebuild
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click

from vm_workspaces import __version__
from vm_workspaces._logging import configure_logging
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.exceptions import StartCancelledError
from vm_workspaces.models import PortSet, ProgressMessage, StageState, StageUpdate, StartOutcome, Workspace
from vm_workspaces.orchestrator import WorkspaceStartupOrchestrator
from vm_workspaces.process_registry import ProcessRegistry
from vm_workspaces.settings import Settings
from vm_workspaces.ssh_runner import KnownHostStore
from vm_workspaces.store import JsonWorkspaceStore

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_WORKSPACE_ERROR = 125
EXIT_CANCELLED = 130  # 128 + SIGINT

_STATE_COLORS: dict[StageState, str] = {
    StageState.IN_PROGRESS: "cyan",
    StageState.SUCCESS: "green",
    StageState.FAILED: "red",
}


@dataclass
class _CliContext:
    settings: Settings
    store: JsonWorkspaceStore
    json_output: bool
    quiet: bool


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def progress_printer(json_output: bool) -> Callable[[ProgressMessage], None]:
    """Progress sink that prints stage updates and log lines.

    JSON mode writes one object per line to stdout; text mode writes to stderr
    so stdout stays clean for the final result.
    """

    def sink(message: ProgressMessage) -> None:
        if json_output:
            click.echo(message.model_dump_json())
        elif isinstance(message, StageUpdate):
            label = click.style(message.state.value, fg=_STATE_COLORS[message.state])
            click.echo(f"[{message.stage.value}] {label}: {message.message}", err=True)
        else:
            click.echo(click.style(message.text, dim=True), err=True)

    return sink


def _report_outcome(ctx: _CliContext, outcome: StartOutcome, workspace: Workspace) -> None:
    if ctx.json_output:
        click.echo(
            json.dumps(
                {
                    "success": outcome.success,
                    "message": outcome.message,
                    "workspace_id": workspace.id,
                    "status": workspace.status.value,
                }
            )
        )
    elif outcome.success:
        click.echo(click.style(f"✓ {outcome.message}", fg="green"))


async def _resolve(ctx: _CliContext, key: str) -> Workspace | None:
    workspace = await ctx.store.get(key)
    if workspace is None:
        click.echo(
            format_error(
                "Workspace not found",
                f"No workspace with id or name '{key}' in {ctx.store.path}.",
                ["List workspaces with: vmws list", "Register one with: vmws add NAME --disk ... --key ..."],
            ),
            err=True,
        )
    return workspace


async def run_start(ctx: _CliContext, key: str) -> int:
    """Start a workspace and keep it running until Ctrl-C or VM exit."""
    workspace = await _resolve(ctx, key)
    if workspace is None:
        return EXIT_CLI_ERROR

    token = CancelToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, token.cancel)
    try:
        sink = None if ctx.quiet and not ctx.json_output else progress_printer(ctx.json_output)
        async with WorkspaceStartupOrchestrator.create(settings=ctx.settings, store=ctx.store) as orchestrator:
            outcome = await orchestrator.start(workspace, sink=sink, token=token)
            _report_outcome(ctx, outcome, workspace)
            if not outcome.success:
                if token.cancelled:
                    return EXIT_CANCELLED
                click.echo(
                    format_error(
                        "Workspace failed to start",
                        outcome.message,
                        [
                            "Check stage output above and the [serial] boot log",
                            "Free or reassign conflicting host ports",
                            f"After a disk rebuild run: vmws forget-host {workspace.name}",
                        ],
                    ),
                    err=True,
                )
                return EXIT_WORKSPACE_ERROR

            process = orchestrator.controller.process(workspace.id)
            if process is not None:
                if not ctx.quiet and not ctx.json_output:
                    click.echo(click.style("Workspace running. Press Ctrl-C to stop.", dim=True), err=True)
                try:
                    await token.run(process.wait())
                except StartCancelledError:
                    pass

            stopped = await orchestrator.stop(workspace)
            _report_outcome(ctx, stopped, workspace)
            if not stopped.success:
                click.echo(format_error("Workspace failed to stop", stopped.message), err=True)
                return EXIT_WORKSPACE_ERROR
            return EXIT_SUCCESS
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def run_stop(ctx: _CliContext, key: str) -> int:
    workspace = await _resolve(ctx, key)
    if workspace is None:
        return EXIT_CLI_ERROR
    orchestrator = WorkspaceStartupOrchestrator.create(settings=ctx.settings, store=ctx.store)
    outcome = await orchestrator.stop(workspace)
    _report_outcome(ctx, outcome, workspace)
    if not outcome.success:
        click.echo(
            format_error(
                "Workspace failed to stop",
                outcome.message,
                ["Check that no other manager owns the VM", "Kill leftovers with: vmws sweep"],
            ),
            err=True,
        )
        return EXIT_WORKSPACE_ERROR
    return EXIT_SUCCESS


# ============================================================================
# Commands
# ============================================================================


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--store",
    "store_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Workspace store file (default: <data dir>/workspaces.json)",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.version_option(__version__, "-V", "--version", prog_name="vm-workspaces")
@click.pass_context
def main(click_ctx: click.Context, store_path: Path | None, json_output: bool, quiet: bool) -> None:
    """Start, stop and inspect local QEMU workspace VMs."""
    configure_logging(quiet=quiet)
    settings = Settings()
    click_ctx.obj = _CliContext(
        settings=settings,
        store=JsonWorkspaceStore(store_path or settings.resolved_workspace_store_file()),
        json_output=json_output,
        quiet=quiet,
    )


@main.command()
@click.argument("name")
@click.option("--disk", "disk_path", required=True, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--key", "key_path", required=True, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--seed", "seed_path", type=click.Path(dir_okay=False, path_type=Path), help="cloud-init seed ISO")
@click.option("--user", "username", default=None, help="Guest SSH user")
@click.option("-m", "--memory", default=4096, show_default=True, help="Memory in MB")
@click.option("--cpus", default=4, show_default=True, help="CPU cores")
@click.option("--ssh-port", type=int, default=None, help="Host SSH port")
@click.option("--web-port", type=int, default=None, help="Host web UI port")
@click.option("--api-port", type=int, default=None, help="Host API port")
@click.pass_obj
def add(
    ctx: _CliContext,
    name: str,
    disk_path: Path,
    key_path: Path,
    seed_path: Path | None,
    username: str | None,
    memory: int,
    cpus: int,
    ssh_port: int | None,
    web_port: int | None,
    api_port: int | None,
) -> None:
    """Register a workspace backed by an existing disk image."""
    overrides = {"ssh": ssh_port, "web": web_port, "api": api_port}
    ports = PortSet(**{k: v for k, v in overrides.items() if v is not None})
    fields = {"username": username} if username else {}
    try:
        workspace = Workspace(
            name=name,
            disk_path=disk_path.expanduser().resolve(),
            ssh_private_key_path=key_path.expanduser().resolve(),
            seed_iso_path=seed_path.expanduser().resolve() if seed_path else None,
            memory_mb=memory,
            cpu_cores=cpus,
            ports=ports,
            **fields,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    asyncio.run(ctx.store.save(workspace))
    if ctx.json_output:
        click.echo(workspace.model_dump_json())
    else:
        click.echo(f"{workspace.id}  {workspace.name}")


@main.command(name="list")
@click.pass_obj
def list_workspaces(ctx: _CliContext) -> None:
    """List registered workspaces."""
    workspaces = asyncio.run(ctx.store.load())
    if ctx.json_output:
        click.echo(json.dumps([w.model_dump(mode="json") for w in workspaces], indent=2))
        return
    for w in workspaces:
        click.echo(f"{w.id}  {w.name:<20} {w.status.value:<18} ssh={w.ports.ssh} web={w.ports.web}")


@main.command()
@click.argument("workspace")
@click.pass_obj
def start(ctx: _CliContext, workspace: str) -> NoReturn:
    """Start WORKSPACE (id or name) and wait; Ctrl-C stops it."""
    sys.exit(asyncio.run(run_start(ctx, workspace)))


@main.command()
@click.argument("workspace")
@click.pass_obj
def stop(ctx: _CliContext, workspace: str) -> NoReturn:
    """Stop WORKSPACE (id or name) via QMP, killing it if QMP fails."""
    sys.exit(asyncio.run(run_stop(ctx, workspace)))


@main.command()
@click.pass_obj
def sweep(ctx: _CliContext) -> None:
    """Kill QEMU processes recorded by a previous run that are still alive."""
    registry = ProcessRegistry(ctx.settings.resolved_process_registry_file())
    killed = asyncio.run(registry.sweep_orphans())
    if ctx.json_output:
        click.echo(json.dumps([r.model_dump() for r in killed]))
        return
    for record in killed:
        click.echo(f"killed pid {record.pid} ({record.workspace_id})")
    if not killed:
        click.echo("No orphaned QEMU processes.")


@main.command(name="forget-host")
@click.argument("workspace")
@click.pass_obj
def forget_host(ctx: _CliContext, workspace: str) -> NoReturn:
    """Forget the pinned SSH host key of WORKSPACE."""
    found = asyncio.run(_resolve(ctx, workspace))
    if found is None:
        sys.exit(EXIT_CLI_ERROR)
    removed = KnownHostStore(ctx.settings.resolved_known_hosts_file()).forget(found.ports.ssh)
    click.echo("Host key removed." if removed else "No pinned host key.")
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
