"""RippleGate CLI - staged gates for ripple-aware code changes."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import click
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ripplegate import __version__
from ripplegate.build.types import BuildResult
from ripplegate.config import RippleGateConfig, get_state_root, load_config
from ripplegate.errors import PreconditionUnmet, RippleGateError
from ripplegate.evidence.loader import (
    load_fact_file,
    load_usage_file,
    parse_member_spec,
    parse_usage_spec,
)
from ripplegate.evidence.types import FactDraft
from ripplegate.impact.types import EDIT_CATEGORIES
from ripplegate.index.project_index import FileProjectIndex
from ripplegate.storage.state_store import FileStateStore
from ripplegate.utils.timestamps import clock_for_mode
from ripplegate.workflow.machine import GateMachine
from ripplegate.workflow.types import StageStatus, StatusView

EXIT_INVALID_INPUT = 2
EXIT_DISCREPANCY = 5
EXIT_BUILD_FAILED = 6
EXIT_BUILD_TIMEOUT = 7

cli = typer.Typer(
    name="ripplegate",
    help="RippleGate - staged gates for ripple-aware code changes",
    no_args_is_help=True,
)
console = Console()

_STATUS_STYLES = {
    StageStatus.PENDING: "dim",
    StageStatus.IN_PROGRESS: "yellow",
    StageStatus.PASSED: "green",
    StageStatus.FAILED: "bold red",
    StageStatus.SKIPPED: "cyan",
}


@dataclass
class _Settings:
    state_root: Path
    timestamp_mode: str
    index_path: Path | None


def _version_option_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@cli.callback()
def _cli_callback(
    ctx: typer.Context,
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="State directory (default: $RIPPLEGATE_STATE_DIR, then nearest .ripplegate/).",
    ),
    index: Path | None = typer.Option(
        None,
        "--index",
        help="Project relationship index (YAML or JSON); overrides [index] path.",
    ),
    timestamp_mode: str = typer.Option(
        "wallclock",
        "--timestamp-mode",
        click_type=click.Choice(["deterministic", "now", "wallclock"], case_sensitive=False),
        help="Timestamp mode for recorded events.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity."),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show RippleGate version and exit.",
        is_eager=True,
        callback=_version_option_callback,
    ),
) -> None:
    """Resolve the state directory and logging before any command runs."""
    _ = version
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
            force=True,
        )
    ctx.obj = _Settings(
        state_root=get_state_root(state_dir),
        timestamp_mode=timestamp_mode,
        index_path=index,
    )


def _fail(message: str, code: int) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    return typer.Exit(code)


@contextmanager
def _engine_errors() -> Iterator[None]:
    """Translate engine errors into exit codes."""
    try:
        yield
    except RippleGateError as e:
        raise _fail(str(e), e.exit_code) from e
    except (ValueError, OSError) as e:
        raise _fail(str(e), EXIT_INVALID_INPUT) from e


def _machine(ctx: typer.Context, *, need_index: bool = False) -> tuple[GateMachine, RippleGateConfig]:
    settings: _Settings = ctx.obj
    config = load_config(settings.state_root)
    index_path = settings.index_path or config.index_path
    index = None
    if index_path is not None:
        index = FileProjectIndex(index_path)
    elif need_index:
        raise _fail("no project index: pass --index or set [index] path in config.toml", EXIT_INVALID_INPUT)
    machine = GateMachine(
        FileStateStore(settings.state_root),
        index,
        clock=clock_for_mode(settings.timestamp_mode),
        build_rules=config.diagnostic_rules,
        build_cwd=config.build.cwd,
        build_timeout_sec=config.build.timeout_sec,
    )
    return machine, config


def _render_status(view: StatusView) -> None:
    change = view.change
    table = Table(title=f"{escape(change.change_id)} ({change.status.value})")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Updated")
    table.add_column("Diagnostics")
    for record in view.stages:
        style = _STATUS_STYLES[record.status]
        marker = " <" if record.stage is view.current_stage else ""
        table.add_row(
            f"{record.stage.value}{marker}",
            f"[{style}]{record.status.value}[/{style}]",
            str(record.attempts),
            record.updated_at,
            escape("\n".join(record.diagnostics)),
        )
    console.print(table)
    if view.missing_facts:
        console.print("[yellow]Missing facts:[/yellow]")
        for item in view.missing_facts:
            console.print(f"[yellow]  - {escape(item)}[/yellow]")
    if view.open_consumers:
        console.print("[yellow]Open consumer edits:[/yellow]")
        for item in view.open_consumers:
            console.print(f"[yellow]  - {escape(item)}[/yellow]")


def _show(machine: GateMachine, change_id: str) -> None:
    _render_status(machine.status(change_id))


def _build_exit(result: BuildResult) -> None:
    if result.succeeded:
        console.print(f"[green]✓ Build succeeded[/green] ({result.duration_sec:.2f}s)")
        return
    if result.timed_out:
        console.print(f"[bold red]Build timed out[/bold red] after {result.duration_sec:.1f}s")
        raise typer.Exit(EXIT_BUILD_TIMEOUT)
    console.print(f"[bold red]Build failed[/bold red] (exit {result.exit_code})")
    for diagnostic in result.diagnostics:
        routed = diagnostic.routed_stage.value if diagnostic.routed_stage else "-"
        console.print(f"[red]  - {escape(diagnostic.text)}[/red] [dim]-> {routed}[/dim]")
    raise typer.Exit(EXIT_BUILD_FAILED)


@cli.command()
def scope(
    ctx: typer.Context,
    change_id: str = typer.Argument(..., help="Identifier for the change request."),
    description: str = typer.Option(..., "--scope", "-s", help="What will be modified."),
    criterion: list[str] = typer.Option([], "--criterion", "-c", help="Success criterion (repeatable)."),
    ripple: bool = typer.Option(
        False,
        "--ripple/--no-ripple",
        help="Whether other files consume the changed symbols.",
    ),
    changed: list[str] = typer.Option([], "--changed", help="Symbol this change modifies (repeatable)."),
    uses: list[str] = typer.Option([], "--uses", help="External symbol the change relies on (repeatable)."),
) -> None:
    """Declare a change request and pass the scoped gate."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        machine.scope(
            change_id,
            description,
            success_criteria=criterion,
            has_ripple_effect=ripple,
            changed_symbols=changed,
            referenced_symbols=uses,
        )
        console.print(f"[green]✓ Scoped {change_id}[/green]")
        _show(machine, change_id)


@cli.command()
def rescope(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    description: str | None = typer.Option(None, "--scope", "-s"),
    criterion: list[str] | None = typer.Option(None, "--criterion", "-c"),
    ripple: bool | None = typer.Option(None, "--ripple/--no-ripple"),
    changed: list[str] | None = typer.Option(None, "--changed"),
    uses: list[str] | None = typer.Option(None, "--uses"),
) -> None:
    """Change the declared scope; every later stage has to be redone."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        machine.rescope(
            change_id,
            scope=description,
            success_criteria=criterion or None,
            has_ripple_effect=ripple,
            changed_symbols=changed or None,
            referenced_symbols=uses or None,
        )
        console.print(f"[green]✓ Rescoped {change_id}[/green]")
        _show(machine, change_id)


@cli.command("analyze-impact")
def analyze_impact(ctx: typer.Context, change_id: str = typer.Argument(...)) -> None:
    """List consumer files of the changed symbols."""
    with _engine_errors():
        machine, _ = _machine(ctx, need_index=True)
        entries = machine.analyze_impact(change_id)
        console.print(f"[cyan]Consumers:[/cyan] {len(entries)}")
        for entry in entries:
            console.print(f"  {escape(entry.file_path)} [dim]({escape(', '.join(entry.symbols))})[/dim]")
        _show(machine, change_id)


@cli.command("map-dependencies")
def map_dependencies(ctx: typer.Context, change_id: str = typer.Argument(...)) -> None:
    """Enumerate the external symbols the change relies on."""
    with _engine_errors():
        machine, _ = _machine(ctx, need_index=True)
        dependencies = machine.map_dependencies(change_id)
        console.print(f"[cyan]Dependencies:[/cyan] {len(dependencies)}")
        for dependency in dependencies:
            console.print(f"  {escape(dependency.render())}")
        _show(machine, change_id)


@cli.command("record-fact")
def record_fact(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    from_file: Path | None = typer.Option(None, "--from", help="YAML/JSON file with facts."),
    subject: str | None = typer.Option(None, "--subject", help="Documented class/module/function."),
    file_path: str | None = typer.Option(None, "--file", help="Source file the subject is defined in."),
    member: list[str] = typer.Option(
        [],
        "--member",
        "-m",
        help="name;type;signature[;nullable[;constraints]] (repeatable).",
    ),
) -> None:
    """Record dependency facts; with no input, re-check completeness."""
    with _engine_errors():
        drafts: list[FactDraft] = []
        if from_file is not None:
            drafts.extend(load_fact_file(from_file))
        if member:
            if not subject or not file_path:
                raise _fail("--member requires --subject and --file", EXIT_INVALID_INPUT)
            drafts.append(
                FactDraft(
                    subject=subject,
                    file_path=file_path,
                    members=tuple(parse_member_spec(spec) for spec in member),
                )
            )
        machine, _ = _machine(ctx)
        record = machine.document_facts(change_id, drafts)
        if record.status is StageStatus.PASSED:
            console.print("[green]✓ All dependencies documented[/green]")
        else:
            console.print("[yellow]Facts incomplete[/yellow]")
        _show(machine, change_id)
        if record.status is not StageStatus.PASSED:
            raise typer.Exit(PreconditionUnmet.exit_code)


@cli.command("generate-gate")
def generate_gate(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    note: str | None = typer.Option(None, "--note", help="What was generated."),
) -> None:
    """Pass the generation gate (requires every dependency documented)."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        machine.generate(change_id, note)
        console.print("[green]✓ Generation recorded[/green]")
        _show(machine, change_id)


@cli.command()
def validate(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    use: list[str] = typer.Option([], "--use", "-u", help="name;type;signature actually used (repeatable)."),
    from_file: Path | None = typer.Option(None, "--from", help="YAML/JSON usage file."),
) -> None:
    """Cross-check asserted usage against recorded facts."""
    with _engine_errors():
        usage = [parse_usage_spec(spec) for spec in use]
        if from_file is not None:
            usage.extend(load_usage_file(from_file))
        machine, _ = _machine(ctx)
        _, discrepancies = machine.self_validate(change_id, usage)
        _show(machine, change_id)
    if discrepancies:
        console.print(f"[bold red]{len(discrepancies)} discrepancy(ies):[/bold red]")
        for discrepancy in discrepancies:
            console.print(f"[red]  - {escape(discrepancy.render())}[/red]")
        raise typer.Exit(EXIT_DISCREPANCY)
    console.print("[green]✓ Self-validation passed[/green]")


@cli.command()
def build(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    command: str | None = typer.Option(None, "--command", help="Build command (default: [build] command)."),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds before the build is killed."),
) -> None:
    """Run the build and route its diagnostics."""
    with _engine_errors():
        machine, config = _machine(ctx)
        build_command = command or config.build.command
        if not build_command:
            raise _fail("no build command: pass --command or set [build] command", EXIT_INVALID_INPUT)
        result = machine.build(change_id, build_command, timeout_sec=timeout)
        _show(machine, change_id)
    _build_exit(result)


@cli.command("mark-consumer")
def mark_consumer(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    file_path: str = typer.Argument(..., help="Consumer file."),
    category: str = typer.Argument(..., help=f"Edit category: {'|'.join(EDIT_CATEGORIES)}."),
    note: str | None = typer.Option(None, "--note"),
    reopen: bool = typer.Option(False, "--reopen", help="Mark the category as not done."),
) -> None:
    """Tick one edit category for a consumer file."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        entry = machine.mark_consumer(change_id, file_path, category, note, done=not reopen)
        remaining = entry.open_categories()
        if remaining:
            console.print(f"[cyan]{escape(file_path)}:[/cyan] open: {', '.join(remaining)}")
        else:
            console.print(f"[green]✓ {escape(file_path)} fully updated[/green]")
        _show(machine, change_id)


@cli.command("verify-consumers")
def verify_consumers(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    command: str | None = typer.Option(None, "--command", help="Recompile before verifying."),
    timeout: float | None = typer.Option(None, "--timeout"),
) -> None:
    """Pass consumers_verified once every consumer is fully updated."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        record = machine.verify_consumers(change_id, command, timeout_sec=timeout)
        record_set = machine.store.load(change_id)
        _show(machine, change_id)
    if command is not None and record.status is not StageStatus.PASSED and record_set.builds:
        _build_exit(record_set.builds[-1])
    console.print("[green]✓ Consumers verified[/green]")


@cli.command()
def abandon(
    ctx: typer.Context,
    change_id: str = typer.Argument(...),
    reason: str | None = typer.Option(None, "--reason"),
) -> None:
    """Abandon a change request; its records are kept."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        machine.abandon(change_id, reason)
        console.print(f"[yellow]Abandoned {change_id}[/yellow]")
        _show(machine, change_id)


@cli.command()
def status(ctx: typer.Context, change_id: str = typer.Argument(...)) -> None:
    """Show the stage table for a change request."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        _show(machine, change_id)


@cli.command()
def history(ctx: typer.Context, change_id: str = typer.Argument(...)) -> None:
    """Show the event journal for a change request."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        events = machine.history(change_id)
        table = Table(title=f"{change_id} history")
        table.add_column("#", justify="right")
        table.add_column("At")
        table.add_column("Event")
        table.add_column("Stage")
        table.add_column("Detail")
        for event in events:
            table.add_row(str(event.sequence), event.at, event.kind, event.stage or "", escape(event.detail))
        console.print(table)
        _show(machine, change_id)


@cli.command("list")
def list_changes(ctx: typer.Context) -> None:
    """List open (non-archived) change requests."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        ids = machine.store.list_ids()
        if not ids:
            console.print("[dim]No change requests.[/dim]")
            return
        table = Table(title="Change requests")
        table.add_column("Change")
        table.add_column("Status")
        table.add_column("Current stage")
        table.add_column("Scope")
        for change_id in ids:
            view = machine.status(change_id)
            current = view.current_stage.value if view.current_stage else "-"
            table.add_row(change_id, view.change.status.value, current, escape(view.change.scope))
        console.print(table)


@cli.command()
def archive(ctx: typer.Context, change_id: str = typer.Argument(...)) -> None:
    """Move a done or abandoned change request to the archive."""
    with _engine_errors():
        machine, _ = _machine(ctx)
        machine.archive(change_id)
        console.print(f"[green]✓ Archived {change_id}[/green]")
        _show(machine, change_id)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
