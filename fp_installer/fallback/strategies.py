"""Fallback strategies — a closed set, each with its own procedures.

Every procedure is individually idempotent:

- ``preflight()`` checks preconditions and raises StrategyActivationError
  before anything on the host is touched.
- ``activate()`` applies the strategy; it raises on failure and the caller
  rolls back with ``deactivate()``.
- ``deactivate()`` removes everything ``activate()`` may have introduced,
  tolerating partial activation.
- ``verify()`` reads live state to confirm the strategy is in effect.
"""

from __future__ import annotations

import logging
import re
from enum import Enum

from fp_installer.core.dependencies import package_sets
from fp_installer.core.environment import detect_package_manager
from fp_installer.core.errors import StrategyActivationError, UnknownStrategyError
from fp_installer.core.host import HostInspector
from fp_installer.core.models import CheckResult, Outcome
from fp_installer.core.runner import CommandRunner, tail
from fp_installer.core.settings import USERSPACE_SERVICE, Settings
from fp_installer.devices import catalog

logger = logging.getLogger(__name__)


class Strategy(Enum):
    GENERIC_LIBRARY = "generic_library"
    COMPATIBILITY_MODE = "compatibility_mode"
    MINIMAL_DRIVER = "minimal_driver"
    USER_SPACE_ONLY = "user_space_only"

    @classmethod
    def from_name(cls, name: str) -> "Strategy":
        """Parse ``user_space_only``, ``user-space-only`` or ``UserSpaceOnly``."""
        key = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", name.strip()).replace("-", "_").lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise UnknownStrategyError(
                f"Unknown fallback strategy: {name!r} (available: {valid})"
            )


# Names written by older fallback configs.
_ALIASES = {
    "generic_libfprint": "generic_library",
    "userspace_only": "user_space_only",
}


class StrategyProcedure:
    strategy: Strategy
    description = ""
    pros = ""
    cons = ""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.host = HostInspector(settings, runner)

    def preflight(self) -> None:
        pass

    def activate(self) -> None:
        raise NotImplementedError

    def deactivate(self) -> None:
        raise NotImplementedError

    def verify(self) -> CheckResult:
        raise NotImplementedError

    def communication_ok(self) -> bool:
        """Whether a working communication path to the device exists."""
        return self.host.device_node_readable()

    def _fail(self, message: str) -> StrategyActivationError:
        return StrategyActivationError(f"{self.strategy.value}: {message}")


class _KernelModuleProcedure(StrategyProcedure):
    """Shared by strategies that reload the primary driver with parameters."""

    parameters: tuple[str, ...] = ()
    status_param = ""

    def preflight(self) -> None:
        if not self.settings.module_artifact.is_file():
            raise self._fail(f"driver module not found at {self.settings.module_artifact}")

    def activate(self) -> None:
        self._unload()
        cmd = ["insmod", str(self.settings.module_artifact)] + list(self.parameters)
        result = self.runner.run(cmd, mutates=True)
        if not result.success:
            raise self._fail(f"insmod failed: {tail(result.output)}")

    def deactivate(self) -> None:
        self._unload()

    def verify(self) -> CheckResult:
        if self.runner.dry_run:
            return CheckResult(Outcome.SUCCESS, ("Verification skipped (dry run)",))
        if not self.host.module_loaded():
            return CheckResult(Outcome.FAILURE, (f"{self.settings.module_name} is not loaded",))
        if not self.host.module_flag_set(self.status_param):
            return CheckResult(
                Outcome.WARNING,
                (f"{self.settings.module_name} loaded but {self.status_param} is not set",),
            )
        return CheckResult(
            Outcome.SUCCESS,
            (f"{self.settings.module_name} loaded with {self.status_param}=1",),
        )

    def _unload(self) -> None:
        if self.host.module_loaded():
            self.runner.run(["rmmod", self.settings.module_name], mutates=True)


class GenericLibrary(StrategyProcedure):
    strategy = Strategy.GENERIC_LIBRARY
    description = "Uses the generic libfprint driver for basic functionality"
    pros = "Wide compatibility, stable"
    cons = "Limited features"

    def preflight(self) -> None:
        self._package_set()

    def activate(self) -> None:
        package_set = self._package_set()
        wanted = [p for p in package_set.optional if "fprint" in p]
        missing = [
            p for p in wanted
            if not self.runner.run(list(package_set.query_cmd) + [p]).success
        ]
        if missing:
            result = self.runner.run(
                list(package_set.install_cmd) + missing, timeout=900, mutates=True
            )
            if not result.success:
                raise self._fail(f"libfprint installation failed: {tail(result.output)}")
        self.runner.write_file(self.settings.generic_descriptor_path, generic_descriptor())

    def deactivate(self) -> None:
        self.runner.remove_file(self.settings.generic_descriptor_path)

    def verify(self) -> CheckResult:
        if self.host.fprint_lists_device():
            return CheckResult(Outcome.SUCCESS, ("libfprint lists the device",))
        return CheckResult(Outcome.WARNING, ("libfprint does not list the device",))

    def communication_ok(self) -> bool:
        return self.host.device_detected() and self.host.usb_path_accessible()

    def _package_set(self):
        manager = detect_package_manager(self.runner.which)
        sets = package_sets()
        if manager not in sets:
            raise self._fail("no supported package manager to install libfprint")
        return sets[manager]


class CompatibilityMode(_KernelModuleProcedure):
    strategy = Strategy.COMPATIBILITY_MODE
    description = "Uses the driver with compatibility flags enabled"
    pros = "Full features, better compatibility"
    cons = "May be slower"
    parameters = ("compatibility_mode=1", "debug=1")
    status_param = "compatibility_mode"


class MinimalDriver(_KernelModuleProcedure):
    strategy = Strategy.MINIMAL_DRIVER
    description = "Uses the driver with minimal functionality"
    pros = "Lightweight, stable"
    cons = "Reduced features"
    parameters = ("minimal_mode=1",)
    status_param = "minimal_mode"

    def activate(self) -> None:
        self.runner.write_file(
            self.settings.minimal_options_path,
            "# Minimal Xiaomi fingerprint driver configuration (managed by fp-installer)\n"
            f"options {self.settings.module_name} minimal_mode=1 reduced_functionality=1\n",
        )
        super().activate()

    def deactivate(self) -> None:
        super().deactivate()
        self.runner.remove_file(self.settings.minimal_options_path)


class UserSpaceOnly(StrategyProcedure):
    strategy = Strategy.USER_SPACE_ONLY
    description = "Uses a user-space implementation without the kernel driver"
    pros = "No kernel dependencies"
    cons = "Requires root access, may be slower"

    def preflight(self) -> None:
        if not self.settings.userspace_source.is_file():
            raise self._fail(f"user-space source not found at {self.settings.userspace_source}")
        if not self.runner.which("gcc"):
            raise self._fail("gcc is required to build the user-space library")
        if not self.runner.which("systemctl"):
            raise self._fail("a systemd host is required for the user-space service")

    def activate(self) -> None:
        library = self.settings.userspace_library_path
        if not self.runner.dry_run:
            library.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.run(
            ["gcc", "-shared", "-fPIC", "-o", str(library),
             str(self.settings.userspace_source), "-lusb-1.0"],
            timeout=self.settings.build_timeout,
            mutates=True,
        )
        if not result.success:
            raise self._fail(f"user-space library build failed: {tail(result.output)}")
        self.runner.run(["ldconfig"], mutates=True)

        self.runner.write_file(
            self.settings.unit_path(USERSPACE_SERVICE), userspace_unit(library)
        )
        self.runner.run(["systemctl", "daemon-reload"], mutates=True)
        for action in ("enable", "start"):
            result = self.runner.run(
                ["systemctl", action, f"{USERSPACE_SERVICE}.service"], mutates=True
            )
            if not result.success:
                raise self._fail(
                    f"systemctl {action} {USERSPACE_SERVICE} failed: {tail(result.output)}"
                )

    def deactivate(self) -> None:
        unit = self.settings.unit_path(USERSPACE_SERVICE)
        if unit.exists():
            self.runner.run(["systemctl", "stop", f"{USERSPACE_SERVICE}.service"], mutates=True)
            self.runner.run(["systemctl", "disable", f"{USERSPACE_SERVICE}.service"], mutates=True)
            self.runner.remove_file(unit)
            self.runner.run(["systemctl", "daemon-reload"], mutates=True)
        if self.runner.remove_file(self.settings.userspace_library_path):
            self.runner.run(["ldconfig"], mutates=True)

    def verify(self) -> CheckResult:
        if self.runner.dry_run:
            return CheckResult(Outcome.SUCCESS, ("Verification skipped (dry run)",))
        if not self.host.service_state(USERSPACE_SERVICE).active:
            return CheckResult(Outcome.FAILURE, (f"{USERSPACE_SERVICE} is not active",))
        if not self.host.usb_path_accessible():
            return CheckResult(
                Outcome.WARNING,
                (f"{USERSPACE_SERVICE} active but {self.settings.usb_bus_dir} is not accessible",),
            )
        return CheckResult(
            Outcome.SUCCESS,
            (f"{USERSPACE_SERVICE} active, USB path accessible without kernel driver",),
        )

    def communication_ok(self) -> bool:
        return (
            self.host.service_state(USERSPACE_SERVICE).active
            and self.host.usb_path_accessible()
        )


_PROCEDURES: dict[Strategy, type[StrategyProcedure]] = {
    Strategy.GENERIC_LIBRARY: GenericLibrary,
    Strategy.COMPATIBILITY_MODE: CompatibilityMode,
    Strategy.MINIMAL_DRIVER: MinimalDriver,
    Strategy.USER_SPACE_ONLY: UserSpaceOnly,
}
assert set(_PROCEDURES) == set(Strategy), "every strategy needs a procedure"


def procedure_for(strategy: Strategy, settings: Settings, runner: CommandRunner) -> StrategyProcedure:
    return _PROCEDURES[strategy](settings, runner)


def list_procedures() -> list[type[StrategyProcedure]]:
    return [_PROCEDURES[s] for s in Strategy]


def generic_descriptor() -> str:
    entries = []
    for device in catalog.list_devices():
        entries.append(
            "    <device>\n"
            f"        <name>{device.name} (Generic)</name>\n"
            f"        <vendor_id>0x{device.vendor_id}</vendor_id>\n"
            f"        <product_id>0x{device.product_id}</product_id>\n"
            "        <driver>generic</driver>\n"
            "        <fallback>true</fallback>\n"
            "    </device>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n<devices>\n'
        + "\n".join(entries)
        + "\n</devices>\n"
    )


def userspace_unit(library) -> str:
    return (
        "[Unit]\n"
        "Description=Xiaomi Fingerprint User-space Service\n"
        "After=multi-user.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"Environment=LD_PRELOAD={library}\n"
        "ExecStart=/usr/local/bin/fp_xiaomi_userspace\n"
        "Restart=always\n"
        "User=root\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )
