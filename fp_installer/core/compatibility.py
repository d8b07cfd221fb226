"""Compatibility gate — hardware and environment checks yielding PASS/WARN/FAIL."""

from __future__ import annotations

import logging
import re
from typing import Optional

from fp_installer.core.host import HostInspector, probe_concurrently
from fp_installer.core.models import UNKNOWN, CheckResult, Outcome, SystemProfile
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import FPRINTD_SERVICE, Settings
from fp_installer.devices import catalog

logger = logging.getLogger(__name__)

MIN_KERNEL = (4, 15)
REQUIRED_TOOLS = ("lsusb", "dmesg", "modprobe", "udevadm")
CONFLICTING_MODULES = ("fpc1020", "fpc1155", "validity", "synaptics")
CONFLICTING_SERVICES = ("fprint", "fingerprint-gui")


def parse_kernel_version(release: str) -> Optional[tuple[int, int]]:
    match = re.match(r"(\d+)\.(\d+)", release)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


class CompatibilityGate:
    """Runs the hardware/software checks the pipeline gates on."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.host = HostInspector(settings, runner)

    def check(self, profile: SystemProfile) -> CheckResult:
        failures: list[str] = []
        warnings: list[str] = []

        self._check_kernel(profile, failures, warnings)
        for tool in REQUIRED_TOOLS:
            if not self.runner.which(tool):
                failures.append(f"Required tool not available: {tool}")
        if not self.settings.sys_usb.is_dir():
            failures.append("USB subsystem not found (/sys/bus/usb)")

        self._check_devices(profile, warnings)

        live = probe_concurrently({
            "modules": self.host.loaded_modules,
            "services": lambda: self.host.service_states(
                (FPRINTD_SERVICE,) + CONFLICTING_SERVICES
            ),
        })
        for module in CONFLICTING_MODULES:
            if module in live["modules"]:
                warnings.append(f"Conflicting driver loaded: {module} (consider blacklisting)")
        for name, state in live["services"].items():
            if name != FPRINTD_SERVICE and state.active:
                warnings.append(f"Conflicting fingerprint service running: {name}")

        reasons = tuple(failures + warnings)
        if failures:
            outcome = Outcome.FAILURE
        elif warnings:
            outcome = Outcome.WARNING
        else:
            outcome = Outcome.SUCCESS
            reasons = ("All compatibility checks passed",)
        logger.info("Compatibility gate: %s (%d reasons)", outcome.value, len(reasons))
        return CheckResult(outcome, reasons)

    def _check_kernel(
        self, profile: SystemProfile, failures: list[str], warnings: list[str]
    ) -> None:
        release = profile.kernel_release
        version = parse_kernel_version(release) if release != UNKNOWN else None
        if version is None:
            warnings.append(f"Could not determine kernel version ({release})")
            return
        if version < MIN_KERNEL:
            failures.append(
                f"Kernel {release} is too old (minimum "
                f"{MIN_KERNEL[0]}.{MIN_KERNEL[1]})"
            )
        if not self.settings.kernel_build_dir(release).is_dir():
            warnings.append(
                f"Kernel headers not found for {release}; driver compilation may fail"
            )

    def _check_devices(self, profile: SystemProfile, warnings: list[str]) -> None:
        found = catalog.matching_ids(profile.detected_device_ids)
        if not found:
            warnings.append("no device detected")
            return
        for usb_id in found:
            device = catalog.get_device(usb_id)
            if device is None or not device.supported:
                warnings.append(f"Device {usb_id} may not be fully supported")
