"""CLI entry point for fp-installer."""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

import fp_installer
from fp_installer.core.errors import AlreadyInstalledError, InstallerError
from fp_installer.core.logging_config import setup_logging
from fp_installer.core.models import OperationResult, Outcome
from fp_installer.core.settings import Settings

app = typer.Typer(
    name="fp-installer",
    help="Xiaomi fingerprint scanner driver installer with fallback strategies.",
    no_args_is_help=True,
)
fallback_app = typer.Typer(
    help="Manage fallback strategies when the primary driver fails.",
    no_args_is_help=True,
)
app.add_typer(fallback_app, name="fallback")
console = Console()

CONFIG_KEYS = {
    "host_root": str,
    "source_dir": str,
    "build_timeout": int,
    "command_timeout": int,
}

_OUTCOME_COLOR = {
    Outcome.SUCCESS: "green",
    Outcome.WARNING: "yellow",
    Outcome.FAILURE: "red",
}


def _open_store():
    from fp_installer.data.store import DataStore

    return DataStore(str(Settings.load().db_path))


def _load_settings(report: Optional[Path] = None) -> Settings:
    """Resolve settings from env var → stored config → default."""
    store_config: dict[str, str] = {}
    try:
        store = _open_store()
        store_config = store.all_config()
        store.close()
    except Exception:
        pass
    settings = Settings.load(store_config)
    if report is not None:
        settings = replace(settings, report_file=report)
    return settings


def _require_root(dry_run: bool = False) -> None:
    if dry_run or os.geteuid() == 0:
        return
    console.print("[red]Error: this command must be run as root (or use --dry-run).[/]")
    raise typer.Exit(1)


def _fail(error: InstallerError) -> NoReturn:
    console.print(f"[red]Error: {error.message}[/]")
    if error.remediation:
        console.print(f"[dim]→ {error.remediation}[/]")
    raise typer.Exit(1)


def _print_result(result: OperationResult) -> None:
    color = _OUTCOME_COLOR[result.outcome]
    console.print(f"[{color}]{result.message}[/]")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    setup_logging(debug=verbose, log_file=Settings.load().log_file)


@app.command()
def install(
    force: bool = typer.Option(
        False, "--force", "-f", help="Continue past a failed compatibility check or driver load"
    ),
    skip_tests: bool = typer.Option(
        False, "--skip-tests", "-s", help="Skip the compatibility gate and post-install checks"
    ),
    debug: bool = typer.Option(
        False, "--debug", "-d", help="Build and load the driver with debug output"
    ),
    no_fallback: bool = typer.Option(
        False, "--no-fallback", help="Do not install the fallback system"
    ),
    no_configure: bool = typer.Option(
        False, "--no-configure", help="Do not configure fprintd"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Log mutating commands instead of running them"
    ),
    report: Optional[Path] = typer.Option(
        None, "--report", help="Write the JSON report to this path"
    ),
) -> None:
    """Install the fingerprint driver."""
    from fp_installer.core.models import PipelineOptions
    from fp_installer.core.orchestrator import Orchestrator

    _require_root(dry_run)
    settings = _load_settings(report)
    if debug:
        setup_logging(debug=True, log_file=settings.log_file)

    options = PipelineOptions(
        force=force,
        skip_tests=skip_tests,
        debug=debug,
        install_fallback=not no_fallback,
        auto_configure=not no_configure,
        dry_run=dry_run,
    )
    store = _open_store()
    try:
        result = Orchestrator(settings, console=console, store=store).run(options)
    finally:
        store.close()
    raise typer.Exit(0 if result.success else 1)


@app.command()
def uninstall(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Log what would be removed instead of removing it"
    ),
) -> None:
    """Unload the driver and remove installed files and configuration."""
    from fp_installer.core.runner import CommandRunner
    from fp_installer.core.uninstall import Uninstaller

    _require_root(dry_run)
    settings = _load_settings()
    runner = CommandRunner(dry_run=dry_run, default_timeout=settings.command_timeout)
    try:
        result = Uninstaller(settings, runner).run()
    except InstallerError as e:
        _fail(e)
    _print_result(result)
    if dry_run:
        for action in runner.recorded:
            console.print(f"  [dim]{action}[/]")


@app.command()
def detect() -> None:
    """Show host information and detected fingerprint devices."""
    from fp_installer.core.environment import EnvironmentProber
    from fp_installer.core.runner import CommandRunner
    from fp_installer.devices import catalog

    settings = _load_settings()
    console.print("[dim]Detecting environment...[/]\n")
    profile = EnvironmentProber(settings, CommandRunner(dry_run=True)).probe()

    table = Table(title="Environment")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Distribution", f"{profile.distribution_id} ({profile.distribution_version})")
    if profile.pretty_name:
        table.add_row("Name", profile.pretty_name)
    table.add_row("Package manager", profile.package_manager_id)
    table.add_row("Init system", profile.init_system_id)
    table.add_row("Kernel", profile.kernel_release)
    table.add_row("USB devices", str(len(profile.detected_device_ids)))
    console.print(table)

    found = catalog.matching_ids(profile.detected_device_ids)
    if not found:
        console.print("\n[yellow]No supported fingerprint device detected.[/]")
        return
    console.print("\n[bold]Fingerprint devices:[/]")
    for usb_id in found:
        device = catalog.get_device(usb_id)
        if device and device.supported:
            console.print(f"  [green]{usb_id}[/] {device.name}")
        else:
            console.print(f"  [yellow]{usb_id}[/] unknown model (may not be supported)")


@app.command()
def check() -> None:
    """Run the compatibility gate without changing anything."""
    from fp_installer.core.compatibility import CompatibilityGate
    from fp_installer.core.environment import EnvironmentProber
    from fp_installer.core.runner import CommandRunner

    settings = _load_settings()
    runner = CommandRunner(dry_run=True, default_timeout=settings.command_timeout)
    profile = EnvironmentProber(settings, runner).probe()
    result = CompatibilityGate(settings, runner).check(profile)

    color = _OUTCOME_COLOR[result.outcome]
    console.print(f"[bold {color}]Compatibility: {result.outcome.value}[/]")
    for reason in result.reasons:
        console.print(f"  • {reason}")
    raise typer.Exit(1 if result.outcome == Outcome.FAILURE else 0)


@app.command()
def suite(
    mode: str = typer.Argument(
        "standard", help="quick, standard, comprehensive, ci, development or release"
    ),
) -> None:
    """Run a named test suite (never modifies the host)."""
    from fp_installer.core.orchestrator import stage_table
    from fp_installer.core.suites import MODES, SuiteRunner

    if mode not in MODES:
        console.print(
            f"[red]Unknown suite mode: {mode}. Valid modes: {', '.join(MODES)}[/]"
        )
        raise typer.Exit(1)

    report = SuiteRunner(_load_settings()).run(mode)
    console.print(stage_table(report.results, f"Test Suite: {mode}"))
    counts = report.counts()
    summary = (
        f"{counts['success']} passed, {counts['warning']} warnings, "
        f"{counts['failure']} failed"
    )
    if report.success:
        console.print(f"[bold green]Suite passed[/] ({summary})")
    else:
        strict = " (warnings count as failures)" if report.strict else ""
        console.print(f"[bold red]Suite failed{strict}[/] ({summary})")
    raise typer.Exit(0 if report.success else 1)


@app.command()
def history(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
    run_id: Optional[str] = typer.Option(None, "--run", help="Show stages of one run"),
) -> None:
    """List recent installation runs."""
    store = _open_store()
    try:
        if run_id:
            stages = store.get_run_stages(run_id)
            if not stages:
                console.print(f"[yellow]No run found with id {run_id}[/]")
                raise typer.Exit(1)
            table = Table(title=f"Run {run_id}")
            table.add_column("Stage", style="cyan")
            table.add_column("Outcome")
            table.add_column("Time", justify="right")
            table.add_column("Message")
            for row in stages:
                table.add_row(
                    row["stage_name"], row["outcome"],
                    f"{row['duration_ms']} ms", row["message"] or "",
                )
            console.print(table)
            return

        runs = store.list_runs(limit)
    finally:
        store.close()

    if not runs:
        console.print("[yellow]No runs recorded yet.[/]")
        return
    table = Table(title="Installation History")
    table.add_column("Run", style="cyan")
    table.add_column("Started")
    table.add_column("Result")
    table.add_column("Stages", justify="right")
    table.add_column("Warnings", justify="right")
    for run in runs:
        result = "[green]success[/]" if run["success"] else "[red]failed[/]"
        table.add_row(
            run["id"][:8],
            run["started_at"][:19],
            result,
            str(run["stage_count"]),
            str(run["warning_count"]),
        )
    console.print(table)


@app.command()
def config(
    action: str = typer.Argument(
        "get", help="Action: get or set"
    ),
    key: Optional[str] = typer.Argument(
        None, help=f"Config key ({', '.join(CONFIG_KEYS)})"
    ),
    value: Optional[str] = typer.Argument(
        None, help="Value to set"
    ),
) -> None:
    """View or modify configuration."""
    store = _open_store()

    if action == "get":
        if key:
            val = store.get_config(key)
            if val is not None:
                console.print(f"{key} = {val}")
            else:
                console.print(f"[yellow]{key} is not set[/]")
        else:
            for k in CONFIG_KEYS:
                val = store.get_config(k)
                console.print(f"{k} = {val or '(not set)'}")
    elif action == "set":
        if not key or value is None:
            console.print("[red]Usage: fp-installer config set <key> <value>[/]")
            raise typer.Exit(1)
        if key not in CONFIG_KEYS:
            console.print(
                f"[red]Unknown config key: {key}. "
                f"Valid keys: {', '.join(CONFIG_KEYS)}[/]"
            )
            raise typer.Exit(1)
        if CONFIG_KEYS[key] is int and not value.isdigit():
            console.print(f"[red]{key} must be a whole number of seconds[/]")
            raise typer.Exit(1)
        store.set_config(key, value)
        console.print(f"[green]Set {key} = {value}[/]")
    else:
        console.print("[red]Unknown action. Use 'get' or 'set'.[/]")
        raise typer.Exit(1)

    store.close()


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"fp-installer {fp_installer.__version__}")


# ── fallback ─────────────────────────────────────────────────────────


def _manager():
    from fp_installer.core.runner import CommandRunner
    from fp_installer.fallback.manager import FallbackManager

    settings = _load_settings()
    return FallbackManager(settings, CommandRunner(default_timeout=settings.command_timeout))


@fallback_app.command("install")
def fallback_install(
    reinstall: bool = typer.Option(
        False, "--reinstall", help="Rewrite configuration and monitor unit"
    ),
) -> None:
    """Install the fallback configuration and boot-time monitor."""
    _require_root()
    try:
        _print_result(_manager().install(reinstall=reinstall))
    except AlreadyInstalledError as e:
        console.print(f"[yellow]{e.message}[/]")
        console.print(f"[dim]→ {e.remediation}[/]")
    except InstallerError as e:
        _fail(e)


@fallback_app.command("activate")
def fallback_activate(
    strategy: Optional[str] = typer.Argument(
        None, help="Strategy name (default: DEFAULT_STRATEGY from the fallback config)"
    ),
) -> None:
    """Activate a fallback strategy."""
    _require_root()
    manager = _manager()
    name = strategy or manager.store.read_state().config.default_strategy
    try:
        result = manager.activate(name)
    except InstallerError as e:
        _fail(e)
    _print_result(result)


@fallback_app.command("restore")
def fallback_restore() -> None:
    """Restore the configuration captured before activation."""
    _require_root()
    try:
        result = _manager().restore()
    except InstallerError as e:
        _fail(e)
    _print_result(result)


@fallback_app.command("test")
def fallback_test() -> None:
    """Test device detection, communication and libfprint recognition."""
    _require_root()
    try:
        result = _manager().test()
    except InstallerError as e:
        _fail(e)
    _print_result(result)
    raise typer.Exit(1 if result.outcome == Outcome.FAILURE else 0)


@fallback_app.command("status")
def fallback_status() -> None:
    """Show live driver, device and service state."""
    status = _manager().status()

    table = Table(title="Fallback System Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Kernel", status.kernel_release)
    table.add_row("Distribution", status.distribution)
    table.add_row(
        "Device",
        "\n".join(status.device_lines) if status.device_detected
        else "[red]No fingerprint device detected[/]",
    )
    table.add_row(
        "Driver",
        "\n".join(status.driver_modules) if status.kernel_module_loaded
        else "[yellow]No kernel driver loaded[/]",
    )
    for name, state in status.services.items():
        if state.active:
            shown = "[green]active[/]"
        elif state.enabled:
            shown = "[yellow]enabled but not active[/]"
        else:
            shown = "[red]not available[/]"
        table.add_row(f"Service {name}", shown)
    table.add_row(
        "Fallback",
        "[green]installed[/]" if status.fallback_installed else "[red]not installed[/]",
    )
    active = status.active_strategy or "none"
    if status.recorded_strategy != status.active_strategy:
        active += f" [yellow](recorded: {status.recorded_strategy or 'none'})[/]"
    table.add_row("Active strategy", active)
    console.print(table)

    if status.fallback_config:
        console.print("\n[bold]Fallback configuration:[/]")
        for key, val in status.fallback_config.items():
            console.print(f"  {key}={val}")


@fallback_app.command("list")
def fallback_list() -> None:
    """List available fallback strategies."""
    table = Table(title="Fallback Strategies")
    table.add_column("Strategy", style="cyan")
    table.add_column("Description")
    table.add_column("Pros", style="green")
    table.add_column("Cons", style="yellow")
    for procedure in _manager().list_strategies():
        table.add_row(
            procedure.strategy.value,
            procedure.description,
            procedure.pros,
            procedure.cons,
        )
    console.print(table)


@fallback_app.command("monitor")
def fallback_monitor() -> None:
    """Boot-time hook: activate the default strategy if the driver is missing."""
    _require_root()
    try:
        result = _manager().monitor()
    except InstallerError as e:
        _fail(e)
    _print_result(result)


if __name__ == "__main__":
    app()
