"""Uninstall — unload the driver and remove everything the installer put on the host."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fp_installer.core import environment
from fp_installer.core.errors import StrategyActiveError
from fp_installer.core.host import HostInspector
from fp_installer.core.models import OperationResult, Outcome
from fp_installer.core.rules import RulesInstaller
from fp_installer.core.runner import CommandRunner, tail
from fp_installer.core.services import FPRINTD_CONF
from fp_installer.core.settings import MONITOR_SERVICE, Settings
from fp_installer.fallback.state import FallbackStore

logger = logging.getLogger(__name__)


class Uninstaller:
    """Reverses the install pipeline. Running it twice is a no-op."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.host = HostInspector(settings, runner)
        self.store = FallbackStore(settings, runner)
        self.removed: list[Path] = []

    def run(self) -> OperationResult:
        self.removed = []
        with self.store.lock():
            state = self.store.read_state()
            if state.active_strategy:
                raise StrategyActiveError(
                    f"Fallback strategy {state.active_strategy} is active; "
                    "refusing to uninstall over it"
                )

            unloaded = self._unload_module()
            self._remove_module_file()
            self._remove_rules()
            self._remove_service_config()
            self._remove_fallback()

        if not self.removed and unloaded is None:
            return OperationResult(Outcome.SUCCESS, "Nothing to uninstall")
        if unloaded is False:
            return OperationResult(
                Outcome.WARNING,
                f"Removed {len(self.removed)} file(s); {self.settings.module_name} "
                "is still loaded, reboot to unload it",
            )
        logger.info("Uninstalled; removed %s", ", ".join(str(p) for p in self.removed))
        return OperationResult(
            Outcome.SUCCESS, f"Driver uninstalled; removed {len(self.removed)} file(s)"
        )

    def _remove(self, path: Path) -> bool:
        if self.runner.remove_file(path):
            self.removed.append(path)
            return True
        return False

    def _unload_module(self) -> Optional[bool]:
        """True if unloaded, False if rmmod failed, None if it was not loaded."""
        module = self.settings.module_name
        if not self.host.module_loaded():
            return None
        result = self.runner.run(["rmmod", module], mutates=True)
        if not result.success:
            logger.warning("rmmod %s failed: %s", module, tail(result.output))
            return False
        return True

    def _remove_module_file(self) -> None:
        release = environment.detect_kernel_release()
        if self._remove(self.settings.installed_module_path(release)):
            self.runner.run(["depmod", "-a"], timeout=60, mutates=True)

    def _remove_rules(self) -> None:
        rules_removed = self._remove(self.settings.rules_path)
        for path in (
            self.settings.modules_load_path,
            self.settings.modprobe_conf_path,
            self.settings.minimal_options_path,
        ):
            self._remove(path)
        if rules_removed:
            RulesInstaller(self.settings, self.runner).reload()

    def _remove_service_config(self) -> None:
        changed = self._remove(self.settings.fprintd_override_path)
        conf = self.settings.fprintd_conf_path
        # only when still the content the installer wrote
        if conf.is_file() and conf.read_text() == FPRINTD_CONF:
            changed |= self._remove(conf)
        if changed and self.runner.which("systemctl"):
            self.runner.run(["systemctl", "daemon-reload"], mutates=True)

    def _remove_fallback(self) -> None:
        unit = self.settings.unit_path(MONITOR_SERVICE)
        if unit.exists():
            self.runner.run(["systemctl", "disable", f"{MONITOR_SERVICE}.service"], mutates=True)
            self._remove(unit)
            self.runner.run(["systemctl", "daemon-reload"], mutates=True)
        self._remove(self.settings.fallback_config_path)
        self._remove(self.settings.generic_descriptor_path)
