"""Build & load — compile the external driver, load it, verify live state."""

from __future__ import annotations

import logging

from fp_installer.core.errors import BuildError, LoadError
from fp_installer.core.host import HostInspector, probe_concurrently
from fp_installer.core.models import CheckResult, Outcome
from fp_installer.core.runner import CommandRunner, tail
from fp_installer.core.settings import Settings

logger = logging.getLogger(__name__)


class DriverBuilder:
    """Compiles and loads the kernel module from the driver source tree."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.host = HostInspector(settings, runner)

    def build(self, debug: bool = False) -> None:
        src = self.settings.source_dir
        if not (src / "Makefile").is_file():
            raise BuildError(f"Driver source tree not found: {src / 'Makefile'} is missing")

        self.runner.run(["make", "clean"], cwd=src, mutates=True)
        make = ["make", "DEBUG=1"] if debug else ["make"]
        result = self.runner.run(
            make, cwd=src, timeout=self.settings.build_timeout, mutates=True
        )
        if not result.success:
            raise BuildError(f"Driver build failed: {tail(result.output)}")

        result = self.runner.run(["make", "install"], cwd=src, timeout=120, mutates=True)
        if not result.success:
            raise BuildError(f"Driver installation failed: {tail(result.output)}")
        self.runner.run(["depmod", "-a"], timeout=60, mutates=True)

    def load(self, debug: bool = False) -> bool:
        """Reload the module. Returns whether a copy was loaded beforehand."""
        module = self.settings.module_name
        was_loaded = self.host.module_loaded()
        if was_loaded:
            self.runner.run(["rmmod", module], mutates=True)
        cmd = ["modprobe", module] + (["debug=1"] if debug else [])
        result = self.runner.run(cmd, mutates=True)
        if not result.success:
            if was_loaded:
                self._reload_previous()
            raise LoadError(f"modprobe {module} failed: {tail(result.output)}")
        return was_loaded

    def verify(self) -> CheckResult:
        """Read live state: module listed by lsmod, device node present."""
        if self.runner.dry_run:
            return CheckResult(Outcome.SUCCESS, ("Load verification skipped (dry run)",))
        live = probe_concurrently({
            "module": self.host.module_loaded,
            "node": self.host.device_node_present,
        })
        if not live["module"]:
            raise LoadError(
                f"{self.settings.module_name} is not listed by lsmod after loading"
                f"{self._dmesg_hint()}"
            )
        if not live["node"]:
            return CheckResult(
                Outcome.WARNING,
                (f"Module loaded but {self.settings.device_node} not found "
                 "(normal if no hardware is connected)",),
            )
        return CheckResult(
            Outcome.SUCCESS,
            (f"{self.settings.module_name} loaded, {self.settings.device_node} present",),
        )

    def build_and_load(self, debug: bool = False) -> CheckResult:
        self.build(debug)
        was_loaded = self.load(debug)
        try:
            return self.verify()
        except LoadError:
            if was_loaded:
                self._reload_previous()
            raise

    def _reload_previous(self) -> None:
        """Put back the module that was loaded before this stage unloaded it."""
        module = self.settings.module_name
        result = self.runner.run(["modprobe", module], mutates=True)
        if result.success:
            logger.warning("Load failed; previously loaded %s restored", module)
        else:
            logger.error("Could not restore previously loaded %s: %s", module, result.output)

    def _dmesg_hint(self) -> str:
        result = self.runner.run(["dmesg"], timeout=10)
        lines = [
            line for line in result.stdout.splitlines()
            if "fp_xiaomi" in line or "fingerprint" in line.lower()
        ]
        return ("; recent kernel messages: " + " | ".join(lines[-3:])) if lines else ""
