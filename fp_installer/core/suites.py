"""Test-suite runner — named check bundles for local, CI and release use.

Suites never mutate the host: every check runs against a dry-run
CommandRunner, so read-only commands execute and mutations are only logged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional, Union

from rich.console import Console

from fp_installer.core.compatibility import CompatibilityGate
from fp_installer.core.environment import EnvironmentProber
from fp_installer.core.host import HostInspector, probe_concurrently
from fp_installer.core.models import (
    UNKNOWN,
    CheckResult,
    Outcome,
    PipelineOptions,
    StageResult,
    SystemProfile,
)
from fp_installer.core.orchestrator import Orchestrator
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import Settings
from fp_installer.fallback.manager import FallbackManager

logger = logging.getLogger(__name__)

CheckOutput = Union[CheckResult, dict[str, CheckResult]]

SOURCE_FILES = ("Makefile", "fp_xiaomi_driver.c", "fp_xiaomi_driver.h")
OPTIONAL_SOURCE_FILES = ("libfp_xiaomi.c", "libfp_xiaomi.h")


@dataclass(frozen=True)
class SuiteMode:
    checks: tuple[str, ...]
    parallel: bool = False
    strict: bool = False


_STANDARD = ("environment", "compatibility", "dry_run", "post_install")
_COMPREHENSIVE = _STANDARD + ("source_tree", "fallback_status", "fallback_test")

MODES: dict[str, SuiteMode] = {
    "quick": SuiteMode(("environment", "compatibility")),
    "development": SuiteMode(("environment", "source_tree", "dry_run")),
    "standard": SuiteMode(_STANDARD),
    "ci": SuiteMode(
        ("environment", "compatibility", "source_tree", "dry_run"), parallel=True
    ),
    "comprehensive": SuiteMode(_COMPREHENSIVE),
    "release": SuiteMode(_COMPREHENSIVE, strict=True),
}

# Checks that only read host state and may run side by side.
READ_ONLY_CHECKS = frozenset(
    {"environment", "compatibility", "source_tree", "post_install", "fallback_status"}
)


@dataclass
class SuiteReport:
    mode: str
    strict: bool
    results: list[StageResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        failing = {Outcome.FAILURE, Outcome.WARNING} if self.strict else {Outcome.FAILURE}
        return not any(r.outcome in failing for r in self.results)

    def counts(self) -> dict[str, int]:
        counts = {o.value: 0 for o in Outcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts


class SuiteRunner:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.runner = CommandRunner(dry_run=True, default_timeout=settings.command_timeout)
        self._profile: Optional[SystemProfile] = None
        self._checks: dict[str, Callable[[], CheckOutput]] = {
            "environment": self._check_environment,
            "compatibility": self._check_compatibility,
            "source_tree": self._check_source_tree,
            "dry_run": self._check_dry_run,
            "post_install": self._check_post_install,
            "fallback_status": self._check_fallback_status,
            "fallback_test": self._check_fallback_test,
        }

    def run(self, mode: str) -> SuiteReport:
        if mode not in MODES:
            raise ValueError(f"Unknown suite mode: {mode!r} (available: {', '.join(MODES)})")
        suite = MODES[mode]
        report = SuiteReport(mode=mode, strict=suite.strict)
        logger.info("Running %s suite: %s", mode, ", ".join(suite.checks))

        pending = list(suite.checks)
        if suite.parallel:
            concurrent = [c for c in pending if c in READ_ONLY_CHECKS]
            # Later checks reuse the probed profile.
            self.profile()
            batches = probe_concurrently(
                {name: (lambda n=name: self._timed(n)) for name in concurrent}
            )
            for name in concurrent:
                report.results.extend(batches[name])
            pending = [c for c in pending if c not in READ_ONLY_CHECKS]

        for name in pending:
            report.results.extend(self._timed(name))

        report.finished_at = datetime.now()
        return report

    def profile(self) -> SystemProfile:
        if self._profile is None:
            self._profile = EnvironmentProber(self.settings, self.runner).probe()
        return self._profile

    def _timed(self, name: str) -> list[StageResult]:
        start = time.time()
        try:
            output = self._checks[name]()
        except Exception as e:
            logger.debug("Check %s raised", name, exc_info=True)
            output = CheckResult(Outcome.FAILURE, (str(e) or type(e).__name__,))
        duration_ms = int((time.time() - start) * 1000)
        if isinstance(output, dict):
            return [
                StageResult(f"{name}.{key}", check.outcome, duration_ms, check.message)
                for key, check in output.items()
            ]
        return [StageResult(name, output.outcome, duration_ms, output.message)]

    # ── Checks ───────────────────────────────────────────────────────

    def _check_environment(self) -> CheckResult:
        profile = self.profile()
        unknown = [
            label for label, value in (
                ("distribution", profile.distribution_id),
                ("package manager", profile.package_manager_id),
                ("init system", profile.init_system_id),
            ) if value == UNKNOWN
        ]
        summary = (
            f"{profile.distribution_id} {profile.distribution_version}, "
            f"pm={profile.package_manager_id}, kernel={profile.kernel_release}"
        )
        if unknown:
            return CheckResult(Outcome.WARNING, (summary, f"undetected: {', '.join(unknown)}"))
        return CheckResult(Outcome.SUCCESS, (summary,))

    def _check_compatibility(self) -> CheckResult:
        return CompatibilityGate(self.settings, self.runner).check(self.profile())

    def _check_source_tree(self) -> CheckResult:
        src = self.settings.source_dir
        missing = [f for f in SOURCE_FILES if not (src / f).is_file()]
        if missing:
            return CheckResult(
                Outcome.FAILURE, (f"Missing in {src}: {', '.join(missing)}",)
            )
        optional = [f for f in OPTIONAL_SOURCE_FILES if not (src / f).is_file()]
        if optional:
            return CheckResult(
                Outcome.WARNING,
                (f"User-space fallback sources missing: {', '.join(optional)}",),
            )
        return CheckResult(Outcome.SUCCESS, (f"Driver source tree complete at {src}",))

    def _check_dry_run(self) -> CheckResult:
        settings = replace(
            self.settings, report_file=self.settings.state_dir / "dry-run-report.json"
        )
        runner = CommandRunner(dry_run=True, default_timeout=settings.command_timeout)
        orchestrator = Orchestrator(settings, console=Console(quiet=True), runner=runner)
        report = orchestrator.run(PipelineOptions(dry_run=True))
        planned = len(runner.recorded)
        if report.failures():
            names = ", ".join(r.stage_name for r in report.failures())
            return CheckResult(Outcome.FAILURE, (f"Dry-run pipeline failed at {names}",))
        if report.warnings():
            return CheckResult(
                Outcome.WARNING,
                (f"Dry-run pipeline completed with {len(report.warnings())} warning(s), "
                 f"{planned} planned action(s)",),
            )
        return CheckResult(
            Outcome.SUCCESS, (f"Dry-run pipeline completed, {planned} planned action(s)",)
        )

    def _check_post_install(self) -> dict[str, CheckResult]:
        host = HostInspector(self.settings, self.runner)
        live = probe_concurrently({
            "device_detection": host.device_detected,
            "module_loaded": host.module_loaded,
            "device_node": host.device_node_present,
        })
        labels = {
            "device_detection": "supported device detected",
            "module_loaded": f"{self.settings.module_name} loaded",
            "device_node": f"{self.settings.device_node} present",
        }
        return {
            key: CheckResult(
                Outcome.SUCCESS if ok else Outcome.WARNING,
                (labels[key] if ok else f"not {labels[key]}",),
            )
            for key, ok in live.items()
        }

    def _check_fallback_status(self) -> CheckResult:
        status = FallbackManager(self.settings, self.runner).status()
        if not status.fallback_installed:
            return CheckResult(Outcome.WARNING, ("Fallback system not installed",))
        active = status.active_strategy or "none"
        return CheckResult(
            Outcome.SUCCESS, (f"Fallback system installed, active strategy: {active}",)
        )

    def _check_fallback_test(self) -> CheckResult:
        result = FallbackManager(self.settings, self.runner).test()
        return CheckResult(result.outcome, (result.message,))

