"""Orchestrator — the installation pipeline.

probe → resolve deps → compatibility gate → install deps → build & load →
rules → services → fallback → post-install checks → report.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fp_installer.core.build import DriverBuilder
from fp_installer.core.compatibility import CompatibilityGate
from fp_installer.core.dependencies import DependencyInstaller, PackageSet
from fp_installer.core.environment import EnvironmentProber
from fp_installer.core.errors import (
    AlreadyInstalledError,
    CompatibilityFailure,
    InstallerError,
)
from fp_installer.core.host import HostInspector, probe_concurrently
from fp_installer.core.models import (
    UNKNOWN,
    CheckResult,
    Outcome,
    PipelineOptions,
    PipelineReport,
    StageResult,
    SystemProfile,
)
from fp_installer.core.rules import RulesInstaller
from fp_installer.core.runner import CommandRunner
from fp_installer.core.services import ServiceConfigurator
from fp_installer.core.settings import Settings
from fp_installer.data.store import DataStore
from fp_installer.fallback.manager import FallbackManager

logger = logging.getLogger(__name__)

StageOutput = Union[CheckResult, dict[str, CheckResult]]

_OUTCOME_STYLE = {
    Outcome.SUCCESS: ("green", "✓"),
    Outcome.WARNING: ("yellow", "!"),
    Outcome.FAILURE: ("red", "✗"),
}


@dataclass
class RunContext:
    """What stages hand forward to later stages within one run."""

    options: PipelineOptions
    settings: Settings
    runner: CommandRunner
    profile: Optional[SystemProfile] = None
    package_set: Optional[PackageSet] = None


@dataclass(frozen=True)
class Stage:
    name: str
    action: Callable[[RunContext], StageOutput]
    enabled: Callable[[PipelineOptions], bool] = lambda options: True
    # A failure aborts the run.
    fatal: bool = True
    # --force turns a failure into a warning.
    overridable: bool = False


class Orchestrator:
    """Runs the ordered stages and decides continue/abort in one place."""

    def __init__(
        self,
        settings: Settings,
        console: Optional[Console] = None,
        store: Optional[DataStore] = None,
        runner: Optional[CommandRunner] = None,
    ):
        self.settings = settings
        self.console = console or Console()
        self.store = store
        self._runner = runner

    def stages(self) -> list[Stage]:
        return [
            Stage("probe_environment", _probe_environment),
            Stage("resolve_dependencies", _resolve_dependencies),
            Stage(
                "compatibility_check", _compatibility_check,
                enabled=lambda o: not o.skip_tests, overridable=True,
            ),
            Stage("install_dependencies", _install_dependencies),
            Stage("build_and_load", _build_and_load, overridable=True),
            Stage("install_rules", _install_rules, fatal=False),
            Stage(
                "configure_services", _configure_services,
                enabled=lambda o: o.auto_configure, fatal=False,
            ),
            Stage(
                "install_fallback", _install_fallback,
                enabled=lambda o: o.install_fallback, fatal=False,
            ),
            Stage(
                "post_install", _post_install,
                enabled=lambda o: not o.skip_tests, fatal=False,
            ),
        ]

    def run(self, options: PipelineOptions) -> PipelineReport:
        """Execute the full pipeline."""
        runner = self._runner or CommandRunner(
            dry_run=options.dry_run,
            default_timeout=self.settings.command_timeout,
        )
        ctx = RunContext(options=options, settings=self.settings, runner=runner)
        report = PipelineReport(success=False, stage_results=[], options=options)

        self.console.print(
            Panel(
                f"[bold]Module:[/] {self.settings.module_name}\n"
                f"[bold]Source:[/] {self.settings.source_dir}\n"
                f"[bold]Options:[/] {_describe_options(options)}",
                title="Fingerprint Driver Installation"
                + (" (dry run)" if options.dry_run else ""),
                border_style="blue",
            )
        )

        for stage in self.stages():
            if not stage.enabled(options):
                logger.debug("Stage %s disabled", stage.name)
                continue
            results, abort = self._run_stage(stage, ctx)
            for result in results:
                report.stage_results.append(result)
                self._display_stage(result)
            if abort:
                logger.info("Aborting after %s", stage.name)
                break

        report.profile = ctx.profile
        report.finished_at = datetime.now()
        report.success = not report.failures()

        self._write_report(report)
        if self.store is not None:
            self.store.record_run(report)
        self._display_final_result(report)
        return report

    def _run_stage(self, stage: Stage, ctx: RunContext) -> tuple[list[StageResult], bool]:
        logger.info("Stage %s", stage.name)
        start = time.time()
        try:
            output = stage.action(ctx)
        except Exception as e:
            duration_ms = int((time.time() - start) * 1000)
            if not isinstance(e, InstallerError):
                logger.debug("Stage %s raised", stage.name, exc_info=True)
            result, abort = self._decide(stage, None, e, duration_ms, options=ctx.options)
            return [result], abort

        duration_ms = int((time.time() - start) * 1000)
        if isinstance(output, dict):
            decided = [
                self._decide(
                    Stage(f"{stage.name}.{key}", stage.action, fatal=stage.fatal),
                    check, None, duration_ms, options=ctx.options,
                )
                for key, check in output.items()
            ]
            return [r for r, _ in decided], any(a for _, a in decided)
        result, abort = self._decide(stage, output, None, duration_ms, options=ctx.options)
        return [result], abort

    @staticmethod
    def _decide(
        stage: Stage,
        check: Optional[CheckResult],
        error: Optional[Exception],
        duration_ms: int,
        options: PipelineOptions,
    ) -> tuple[StageResult, bool]:
        """The only place override policy lives. Returns (result, abort)."""
        remediation = ""
        if isinstance(error, AlreadyInstalledError):
            outcome, message = Outcome.WARNING, error.message
        elif isinstance(error, InstallerError):
            outcome, message = Outcome.FAILURE, error.message
            remediation = error.remediation
        elif error is not None:
            outcome = Outcome.FAILURE
            message = str(error) or type(error).__name__
            remediation = "Re-run with --debug and check the log file"
        else:
            outcome, message = check.outcome, check.message

        if outcome == Outcome.FAILURE and stage.overridable:
            if options.force:
                logger.warning("%s failed, continuing (--force): %s", stage.name, message)
                return StageResult(
                    stage.name, Outcome.WARNING, duration_ms,
                    f"Overridden by --force: {message}", remediation,
                ), False
            remediation = remediation or "Re-run with --force to continue"

        abort = outcome == Outcome.FAILURE and stage.fatal
        return StageResult(stage.name, outcome, duration_ms, message, remediation), abort

    # ── Report ───────────────────────────────────────────────────────

    def _write_report(self, report: PipelineReport) -> None:
        path = self.settings.report_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(report.to_dict(), indent=2))
            logger.info("Report written to %s", path)
        except OSError as e:
            logger.warning("Could not write report to %s: %s", path, e)

    def _display_stage(self, result: StageResult) -> None:
        style, mark = _OUTCOME_STYLE[result.outcome]
        self.console.print(
            f"[{style}]{mark}[/] [bold]{result.stage_name}[/] "
            f"[dim]({result.duration_ms} ms)[/] {result.message}"
        )
        if result.remediation and result.outcome != Outcome.SUCCESS:
            self.console.print(f"    [dim]→ {result.remediation}[/]")

    def _display_final_result(self, report: PipelineReport) -> None:
        self.console.print()
        self.console.print(stage_table(report.stage_results, "Installation Summary"))
        duration = (
            (report.finished_at - report.started_at).total_seconds()
            if report.finished_at else 0.0
        )
        if report.success:
            self.console.print(
                Panel(
                    f"[bold green]Installation complete[/]\n"
                    f"Stages: {len(report.stage_results)} "
                    f"({len(report.warnings())} warnings)\n"
                    f"Duration: {duration:.1f}s\n"
                    f"Report: {self.settings.report_path}",
                    title="Success",
                    border_style="green",
                )
            )
        else:
            failed = report.failures()
            self.console.print(
                Panel(
                    f"[bold red]Installation failed[/]\n"
                    f"Failed: {', '.join(r.stage_name for r in failed)}\n"
                    f"Duration: {duration:.1f}s\n"
                    f"Report: {self.settings.report_path}",
                    title="Failed",
                    border_style="red",
                )
            )


def stage_table(results: list[StageResult], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Stage", style="bold")
    table.add_column("Outcome")
    table.add_column("Time", justify="right")
    table.add_column("Message")
    for result in results:
        style, _ = _OUTCOME_STYLE[result.outcome]
        table.add_row(
            result.stage_name,
            f"[{style}]{result.outcome.value}[/]",
            f"{result.duration_ms} ms",
            result.message,
        )
    return table


def _describe_options(options: PipelineOptions) -> str:
    flags = [
        name for name, on in (
            ("force", options.force),
            ("skip-tests", options.skip_tests),
            ("debug", options.debug),
            ("no-fallback", not options.install_fallback),
            ("no-configure", not options.auto_configure),
            ("dry-run", options.dry_run),
        ) if on
    ]
    return ", ".join(flags) or "defaults"


# ── Stage actions ────────────────────────────────────────────────────


def _probe_environment(ctx: RunContext) -> CheckResult:
    profile = EnvironmentProber(ctx.settings, ctx.runner).probe()
    ctx.profile = profile
    summary = (
        f"{profile.pretty_name or profile.distribution_id} "
        f"(pm={profile.package_manager_id}, init={profile.init_system_id}, "
        f"kernel={profile.kernel_release})"
    )
    if profile.distribution_id == UNKNOWN:
        return CheckResult(Outcome.WARNING, (f"Unknown distribution: {summary}",))
    return CheckResult(Outcome.SUCCESS, (summary,))


def _resolve_dependencies(ctx: RunContext) -> CheckResult:
    profile = ctx.profile
    ctx.package_set = DependencyInstaller(ctx.runner).resolve(
        profile.package_manager_id, profile.kernel_release
    )
    optional = ctx.package_set.for_distribution(profile.distribution_id)
    return CheckResult(
        Outcome.SUCCESS,
        (f"{len(ctx.package_set.required)} required, {len(optional)} optional "
         f"packages via {profile.package_manager_id}",),
    )


def _compatibility_check(ctx: RunContext) -> CheckResult:
    result = CompatibilityGate(ctx.settings, ctx.runner).check(ctx.profile)
    if result.outcome == Outcome.FAILURE:
        raise CompatibilityFailure(result.message)
    return result


def _install_dependencies(ctx: RunContext) -> CheckResult:
    return DependencyInstaller(ctx.runner).install(
        ctx.profile.package_manager_id, ctx.profile
    )


def _build_and_load(ctx: RunContext) -> CheckResult:
    return DriverBuilder(ctx.settings, ctx.runner).build_and_load(ctx.options.debug)


def _install_rules(ctx: RunContext) -> CheckResult:
    return RulesInstaller(ctx.settings, ctx.runner).apply()


def _configure_services(ctx: RunContext) -> CheckResult:
    return ServiceConfigurator(ctx.settings, ctx.runner).configure(ctx.profile)


def _install_fallback(ctx: RunContext) -> CheckResult:
    result = FallbackManager(ctx.settings, ctx.runner).install()
    return CheckResult(result.outcome, (result.message,))


def _post_install(ctx: RunContext) -> dict[str, CheckResult]:
    """Re-verify live state. Each check is reported on its own, never fatal."""
    host = HostInspector(ctx.settings, ctx.runner)
    live = probe_concurrently({
        "device_detection": host.device_detected,
        "module_loaded": host.module_loaded,
        "device_node": host.device_node_present,
    })
    node = ctx.settings.device_node
    return {
        "device_detection": _observed(
            live["device_detection"], "Supported device detected", "No supported device detected"
        ),
        "module_loaded": _observed(
            live["module_loaded"],
            f"{ctx.settings.module_name} is loaded",
            f"{ctx.settings.module_name} is not loaded",
        ),
        "device_node": _observed(live["device_node"], f"{node} exists", f"{node} not found"),
    }


def _observed(ok: bool, good: str, bad: str) -> CheckResult:
    if ok:
        return CheckResult(Outcome.SUCCESS, (good,))
    return CheckResult(Outcome.WARNING, (bad,))
