"""Live host queries — modules, devices, services. Read-only, safe to run concurrently."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Optional

from fp_installer.core.models import ServiceState
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import MODULE_FAMILY, Settings
from fp_installer.devices import catalog

logger = logging.getLogger(__name__)

_MAX_PROBE_WORKERS = 4


def probe_concurrently(probes: dict[str, Callable[[], Any]]) -> dict[str, Any]:
    """Run independent read-only probes in parallel; wait for all of them."""
    if not probes:
        return {}
    with ThreadPoolExecutor(max_workers=min(_MAX_PROBE_WORKERS, len(probes))) as pool:
        futures = {name: pool.submit(fn) for name, fn in probes.items()}
        return {name: future.result() for name, future in futures.items()}


class HostInspector:
    """Reads live host state through the command runner and sysfs."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner

    # ── USB devices ──────────────────────────────────────────────────

    def lsusb(self) -> str:
        result = self.runner.run(["lsusb"], timeout=5)
        return result.stdout if result.success else ""

    def device_ids(self) -> frozenset[str]:
        return catalog.parse_usb_ids(self.lsusb())

    def device_lines(self) -> list[str]:
        return catalog.matching_lines(self.lsusb())

    def device_detected(self) -> bool:
        return bool(catalog.matching_ids(self.device_ids()))

    # ── Kernel modules ───────────────────────────────────────────────

    def lsmod(self) -> str:
        result = self.runner.run(["lsmod"], timeout=5)
        return result.stdout if result.success else ""

    def loaded_modules(self) -> set[str]:
        names = set()
        for line in self.lsmod().splitlines()[1:]:
            parts = line.split()
            if parts:
                names.add(parts[0])
        return names

    def module_loaded(self, name: Optional[str] = None) -> bool:
        return (name or self.settings.module_name) in self.loaded_modules()

    def driver_modules(self) -> list[str]:
        """``lsmod`` lines belonging to the fp_xiaomi driver family."""
        return [
            line.strip()
            for line in self.lsmod().splitlines()
            if line.startswith(MODULE_FAMILY)
        ]

    def module_param(self, param: str) -> Optional[str]:
        path = self.settings.module_param_path(param)
        try:
            return path.read_text().strip()
        except OSError:
            return None

    def module_flag_set(self, param: str) -> bool:
        return self.module_param(param) in ("1", "Y", "y")

    # ── Device nodes ─────────────────────────────────────────────────

    def device_node_present(self) -> bool:
        return self.settings.device_node.exists()

    def device_node_readable(self, timeout: int = 5) -> bool:
        """Basic communication check: a bounded read from the device node."""
        if not self.device_node_present():
            return False
        result = self.runner.run(
            ["timeout", str(timeout), "head", "-c", "1", str(self.settings.device_node)],
            timeout=timeout + 2,
        )
        return result.success

    def usb_path_accessible(self) -> bool:
        """The raw USB bus tree is readable without any kernel driver."""
        bus = self.settings.usb_bus_dir
        try:
            return bus.is_dir() and any(bus.iterdir())
        except OSError:
            return False

    # ── Services ─────────────────────────────────────────────────────

    def service_state(self, name: str) -> ServiceState:
        active = self.runner.run(["systemctl", "is-active", "--quiet", name], timeout=10)
        enabled = self.runner.run(["systemctl", "is-enabled", "--quiet", name], timeout=10)
        return ServiceState(active=active.success, enabled=enabled.success)

    def service_states(self, names: Iterable[str]) -> dict[str, ServiceState]:
        return probe_concurrently(
            {name: (lambda n=name: self.service_state(n)) for name in names}
        )

    # ── Consumers ────────────────────────────────────────────────────

    def fprint_lists_device(self) -> bool:
        """libfprint recognition: the device shows up in fprint-list-devices."""
        if not self.runner.which("fprint-list-devices"):
            return False
        result = self.runner.run(["fprint-list-devices"], timeout=10)
        if not result.success:
            return False
        text = result.stdout.lower()
        return "xiaomi" in text or any(vid in text for vid in catalog.VENDOR_IDS)
