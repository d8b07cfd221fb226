"""Fallback strategy manager — install, backup, activate, test, restore.

Lifecycle::

    uninstalled --install()--> installed --activate(S)--> active(S)
    active(S) --test()--> tested(S, verdict)
    active(S)/tested(S) --restore()--> restored (same as installed)

Every mutating operation holds the fallback lock for its whole duration.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional, Union

from fp_installer.core.environment import detect_distribution, detect_kernel_release
from fp_installer.core.errors import (
    AlreadyInstalledError,
    InstallerError,
    NoBackupError,
    StrategyActivationError,
)
from fp_installer.core.host import HostInspector, probe_concurrently
from fp_installer.core.models import (
    BackupSnapshot,
    FallbackConfig,
    FallbackState,
    HostStatus,
    Lifecycle,
    OperationResult,
    Outcome,
    ServiceState,
    Verdict,
)
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import (
    MODULE_FAMILY,
    MONITOR_SERVICE,
    USERSPACE_SERVICE,
    Settings,
)
from fp_installer.fallback.state import FallbackStore
from fp_installer.fallback.strategies import (
    CompatibilityMode,
    MinimalDriver,
    Strategy,
    StrategyProcedure,
    list_procedures,
    procedure_for,
)

logger = logging.getLogger(__name__)

_VERDICT_OUTCOME = {
    Verdict.PASS: Outcome.SUCCESS,
    Verdict.PARTIAL: Outcome.WARNING,
    Verdict.FAIL: Outcome.FAILURE,
}


def monitor_unit(executable: str) -> str:
    return (
        "[Unit]\n"
        "Description=Xiaomi Fingerprint Fallback Monitor\n"
        "After=multi-user.target\n"
        "\n"
        "[Service]\n"
        "Type=oneshot\n"
        f"ExecStart={executable} fallback monitor\n"
        "RemainAfterExit=yes\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


class FallbackManager:
    """Swaps the active driver implementation under a backup/restore contract."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.store = FallbackStore(settings, runner)
        self.host = HostInspector(settings, runner)

    # ── install ──────────────────────────────────────────────────────

    def install(self, reinstall: bool = False) -> OperationResult:
        """Provision the config record and monitor hook.

        Raises AlreadyInstalledError when already installed (without
        ``reinstall``) or while a strategy is active; callers report it
        as a warning.
        """
        with self.store.lock():
            state = self.store.read_state()
            if state.active_strategy:
                raise AlreadyInstalledError(
                    f"Strategy {state.active_strategy} is active; "
                    "fallback configuration left unchanged",
                    remediation="Run 'fp-installer fallback restore' before reinstalling",
                )
            if state.installed and not reinstall:
                raise AlreadyInstalledError("Fallback system is already installed")

            lifecycle = state.lifecycle if state.installed else Lifecycle.INSTALLED
            self.store.write_state(replace(state, lifecycle=lifecycle, config=FallbackConfig()))

            if not self.runner.which("systemctl"):
                return OperationResult(
                    Outcome.WARNING,
                    "Fallback configuration installed; monitor hook skipped (no systemd)",
                )
            executable = self.runner.which("fp-installer") or "/usr/local/bin/fp-installer"
            if self.runner.write_file(
                self.settings.unit_path(MONITOR_SERVICE), monitor_unit(executable)
            ):
                self.runner.run(["systemctl", "daemon-reload"], mutates=True)
            result = self.runner.run(
                ["systemctl", "enable", f"{MONITOR_SERVICE}.service"], mutates=True
            )
            if not result.success:
                return OperationResult(
                    Outcome.WARNING,
                    f"Fallback configuration installed; enabling {MONITOR_SERVICE} failed",
                )
            logger.info("Fallback system installed")
            return OperationResult(Outcome.SUCCESS, "Fallback system installed")

    # ── backup ───────────────────────────────────────────────────────

    def backup(self) -> BackupSnapshot:
        with self.store.lock():
            return self._backup(self.store.read_state())

    def _backup(self, state: FallbackState) -> BackupSnapshot:
        if state.active_strategy:
            existing = self.store.read_snapshot()
            if existing is not None:
                logger.info("Strategy %s active; keeping existing snapshot", state.active_strategy)
                return existing

        live = probe_concurrently({
            "lsmod": self.host.lsmod,
            "services": lambda: self.host.service_states(self.settings.tracked_services),
        })
        rules = self.settings.rules_path
        snapshot = BackupSnapshot(
            timestamp=datetime.now(),
            loaded_modules=live["lsmod"],
            service_status=live["services"],
            rules_copy=rules.read_text() if rules.is_file() else None,
        )
        self.store.write_snapshot(snapshot)
        logger.info("Configuration backed up to %s", self.settings.backup_dir)
        return snapshot

    # ── activate ─────────────────────────────────────────────────────

    def activate(self, strategy: Union[Strategy, str]) -> OperationResult:
        if isinstance(strategy, str):
            strategy = Strategy.from_name(strategy)
        with self.store.lock():
            return self._activate(strategy, self.store.read_state())

    def _activate(self, strategy: Strategy, state: FallbackState) -> OperationResult:
        if not state.installed:
            raise StrategyActivationError(
                "Fallback system is not installed",
                remediation="Run 'fp-installer fallback install' first",
            )
        procedure = procedure_for(strategy, self.settings, self.runner)
        procedure.preflight()
        self._backup(state)

        previous = state.active_strategy
        if previous and previous != strategy.value:
            logger.info("Deactivating %s before activating %s", previous, strategy.value)
            procedure_for(Strategy.from_name(previous), self.settings, self.runner).deactivate()
        idle = replace(state, lifecycle=Lifecycle.INSTALLED, active_strategy=None, last_verdict=None)
        self.store.write_state(idle)

        logger.info("Activating fallback strategy %s", strategy.value)
        try:
            procedure.activate()
            check = procedure.verify()
            if check.outcome == Outcome.FAILURE:
                raise StrategyActivationError(f"{strategy.value}: {check.message}")
        except Exception as exc:
            logger.warning("Activation of %s failed, rolling back: %s", strategy.value, exc)
            procedure.deactivate()
            if isinstance(exc, InstallerError):
                raise
            raise StrategyActivationError(f"{strategy.value}: {exc}") from exc

        self.store.write_state(
            replace(idle, lifecycle=Lifecycle.ACTIVE, active_strategy=strategy.value)
        )
        outcome = Outcome.SUCCESS if check.outcome == Outcome.SUCCESS else Outcome.WARNING
        return OperationResult(outcome, f"Activated {strategy.value}: {check.message}")

    # ── test ─────────────────────────────────────────────────────────

    def test(self) -> OperationResult:
        """Verdict from live state; records it only. No driver side effects."""
        with self.store.lock():
            state = self.store.read_state()
            procedure: Optional[StrategyProcedure] = None
            if state.active_strategy:
                procedure = procedure_for(
                    Strategy.from_name(state.active_strategy), self.settings, self.runner
                )

            checks = []
            if not self.host.device_detected():
                verdict = Verdict.FAIL
                checks.append("device not detected")
            else:
                live = probe_concurrently({
                    "communication": (
                        procedure.communication_ok if procedure
                        else self.host.device_node_readable
                    ),
                    "recognized": self.host.fprint_lists_device,
                })
                checks.append("device detected")
                checks.append(
                    "communication ok" if live["communication"] else "communication degraded"
                )
                checks.append(
                    "recognized by libfprint" if live["recognized"]
                    else "not recognized by libfprint"
                )
                verdict = (
                    Verdict.PASS if live["communication"] and live["recognized"]
                    else Verdict.PARTIAL
                )

            if state.active_strategy:
                self.store.write_state(
                    replace(state, lifecycle=Lifecycle.TESTED, last_verdict=verdict)
                )
            return OperationResult(
                _VERDICT_OUTCOME[verdict],
                f"{verdict.value.upper()}: {', '.join(checks)}",
                verdict=verdict,
            )

    # ── restore ──────────────────────────────────────────────────────

    def restore(self) -> OperationResult:
        with self.store.lock():
            snapshot = self.store.read_snapshot()
            if snapshot is None:
                raise NoBackupError("No backup found to restore from")
            state = self.store.read_state()

            if state.active_strategy:
                logger.info("Deactivating %s", state.active_strategy)
                procedure_for(
                    Strategy.from_name(state.active_strategy), self.settings, self.runner
                ).deactivate()

            self._restore_modules(snapshot)
            self._restore_rules(snapshot)
            self._restore_services(snapshot)

            self.store.clear_snapshot()
            if state.installed:
                self.store.write_state(replace(
                    state, lifecycle=Lifecycle.RESTORED,
                    active_strategy=None, last_verdict=None,
                ))
            logger.info("Original driver configuration restored")
            return OperationResult(
                Outcome.SUCCESS,
                f"Restored configuration from {snapshot.timestamp:%Y-%m-%d %H:%M:%S}",
            )

    def _restore_modules(self, snapshot: BackupSnapshot) -> None:
        family = MODULE_FAMILY
        wanted = {m for m in snapshot.module_names() if m.startswith(family)}
        current = {m for m in self.host.loaded_modules() if m.startswith(family)}
        for module in sorted(current - wanted):
            self.runner.run(["rmmod", module], mutates=True)
        for module in sorted(wanted - current):
            result = self.runner.run(["modprobe", module], mutates=True)
            if not result.success:
                logger.warning("Could not reload %s: %s", module, result.output)

    def _restore_rules(self, snapshot: BackupSnapshot) -> None:
        if snapshot.rules_copy is not None:
            self.runner.write_file(self.settings.rules_path, snapshot.rules_copy)
        else:
            self.runner.remove_file(self.settings.rules_path)
        result = self.runner.run(["udevadm", "control", "--reload-rules"], mutates=True)
        if result.success:
            self.runner.run(["udevadm", "trigger"], mutates=True)

    def _restore_services(self, snapshot: BackupSnapshot) -> None:
        current = self.host.service_states(snapshot.service_status)
        for name, wanted in sorted(snapshot.service_status.items()):
            self._reconcile_service(name, wanted, current[name])

    def _reconcile_service(self, name: str, wanted: ServiceState, current: ServiceState) -> None:
        unit = f"{name}.service"
        if wanted.enabled != current.enabled:
            action = "enable" if wanted.enabled else "disable"
            self.runner.run(["systemctl", action, unit], mutates=True)
        if wanted.active and current.active:
            self.runner.run(["systemctl", "restart", unit], mutates=True)
        elif wanted.active:
            self.runner.run(["systemctl", "start", unit], mutates=True)
        elif current.active:
            self.runner.run(["systemctl", "stop", unit], mutates=True)

    # ── queries ──────────────────────────────────────────────────────

    def status(self) -> HostStatus:
        """Live host state; never consults cached lifecycle fields."""
        live = probe_concurrently({
            "devices": self.host.device_lines,
            "modules": self.host.driver_modules,
            "services": lambda: self.host.service_states(self.settings.tracked_services),
        })
        _, _, pretty = detect_distribution(self.settings)
        config_path = self.settings.fallback_config_path
        config = self.store.read_raw() if config_path.is_file() else {}
        return HostStatus(
            kernel_release=detect_kernel_release(),
            distribution=pretty or "Unknown",
            device_lines=live["devices"],
            driver_modules=live["modules"],
            services=live["services"],
            fallback_installed=config_path.is_file(),
            fallback_config=config,
            active_strategy=self._live_strategy(live["services"]),
            recorded_strategy=config.get("ACTIVE_STRATEGY") or None,
        )

    def _live_strategy(self, services: dict[str, ServiceState]) -> Optional[str]:
        """Which strategy the host is running right now, from its own signals."""
        userspace = services.get(USERSPACE_SERVICE)
        if userspace is not None and userspace.active:
            return Strategy.USER_SPACE_ONLY.value
        if self.host.module_loaded():
            if self.host.module_flag_set(MinimalDriver.status_param):
                return Strategy.MINIMAL_DRIVER.value
            if self.host.module_flag_set(CompatibilityMode.status_param):
                return Strategy.COMPATIBILITY_MODE.value
        if self.settings.generic_descriptor_path.is_file():
            return Strategy.GENERIC_LIBRARY.value
        return None

    def list_strategies(self) -> list[type[StrategyProcedure]]:
        return list_procedures()

    # ── monitor hook ─────────────────────────────────────────────────

    def monitor(self) -> OperationResult:
        """Boot-time hook: activate the default strategy if the driver is absent."""
        with self.store.lock():
            state = self.store.read_state()
            config = state.config
            if not state.installed or not config.enabled or not config.auto_fallback:
                return OperationResult(Outcome.SUCCESS, "Automatic fallback disabled")
            if state.active_strategy:
                return OperationResult(
                    Outcome.SUCCESS, f"Strategy {state.active_strategy} already active"
                )
            if self.host.module_loaded():
                return OperationResult(
                    Outcome.SUCCESS, "Primary driver loaded; no fallback needed"
                )
            logger.warning(
                "%s not loaded; activating %s",
                self.settings.module_name, config.default_strategy,
            )
            return self._activate(Strategy.from_name(config.default_strategy), state)

