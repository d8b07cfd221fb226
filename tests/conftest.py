"""Shared test fixtures for fp-installer tests."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest

from fp_installer.core.models import SystemProfile
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import MODULE_NAME, Settings
from fp_installer.data.store import DataStore

XIAOMI_LSUSB = "Bus 001 Device 004: ID 2717:0368 Xiaomi Inc. Fingerprint Scanner"
OTHER_LSUSB = "Bus 001 Device 001: ID 1d6b:0002 Linux Foundation 2.0 root hub"
KERNEL_RELEASE = "6.5.0-14-generic"

DEFAULT_TOOLS = {
    "lsusb", "lsmod", "dmesg", "modprobe", "udevadm", "systemctl", "apt",
    "apt-get", "dpkg", "gcc", "make", "insmod", "rmmod", "depmod", "ldconfig",
    "fprint-list-devices", "fp-installer",
}


def _done(cmd, returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


class FakeHost:
    """Simulates the commands fp-installer runs, backed by a tmp_path host root.

    Module parameters and the device node are materialized as files under
    the host root so sysfs/devfs reads behave like a real host.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.usb_lines: list[str] = [OTHER_LSUSB, XIAOMI_LSUSB]
        self.modules: dict[str, dict[str, str]] = {}
        self.services: dict[str, list[bool]] = {}  # name -> [active, enabled]
        self.packages: set[str] = set()
        self.tools: set[str] = set(DEFAULT_TOOLS)
        self.fprint_output = ""
        self.failures: dict[str, int] = {}
        self.failure_budget: dict[str, int] = {}
        self.calls: list[list[str]] = []

    # ── Setup helpers ────────────────────────────────────────────────

    def load_module(self, name: str = MODULE_NAME, **params: str) -> None:
        self.modules[name] = dict(params)
        param_dir = self.settings.host_path("sys", "module", name, "parameters")
        param_dir.mkdir(parents=True, exist_ok=True)
        for key, value in params.items():
            (param_dir / key).write_text(f"{value}\n")
        if name == MODULE_NAME and self.device_connected:
            self.settings.device_node.parent.mkdir(parents=True, exist_ok=True)
            self.settings.device_node.write_text("")

    def unload_module(self, name: str) -> None:
        self.modules.pop(name, None)
        param_dir = self.settings.host_path("sys", "module", name, "parameters")
        if param_dir.is_dir():
            for f in param_dir.iterdir():
                f.unlink()
        if name == MODULE_NAME and self.settings.device_node.exists():
            self.settings.device_node.unlink()

    def set_service(self, name: str, active: bool, enabled: bool) -> None:
        self.services[name] = [active, enabled]

    def fail(self, prefix: str, returncode: int = 1, times: Optional[int] = None) -> None:
        """Make commands starting with ``prefix`` fail, every time or ``times`` times."""
        self.failures[prefix] = returncode
        if times is not None:
            self.failure_budget[prefix] = times

    @property
    def device_connected(self) -> bool:
        return any("2717:" in line or "10a5:" in line for line in self.usb_lines)

    @property
    def mutations(self) -> list[list[str]]:
        read_only = {
            ("lsusb",), ("lsmod",), ("dmesg",), ("fprint-list-devices",),
            ("systemctl", "is-active"), ("systemctl", "is-enabled"),
            ("dpkg", "-s"), ("timeout",),
        }
        return [
            c for c in self.calls
            if tuple(c[:1]) not in read_only and tuple(c[:2]) not in read_only
        ]

    # ── Patched entry points ─────────────────────────────────────────

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.tools else None

    def run(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] not in self.tools and cmd[0] != "timeout":
            raise FileNotFoundError(cmd[0])
        rendered = " ".join(cmd)
        for prefix, code in list(self.failures.items()):
            if rendered.startswith(prefix):
                if prefix in self.failure_budget:
                    self.failure_budget[prefix] -= 1
                    if self.failure_budget[prefix] <= 0:
                        del self.failures[prefix], self.failure_budget[prefix]
                return _done(cmd, code, "", f"simulated failure: {rendered}")
        handler = getattr(self, "_cmd_" + cmd[0].replace("-", "_"), None)
        if handler is None:
            return _done(cmd)
        return handler(cmd)

    # ── Command handlers ─────────────────────────────────────────────

    def _cmd_lsusb(self, cmd):
        return _done(cmd, stdout="\n".join(self.usb_lines) + "\n")

    def _cmd_lsmod(self, cmd):
        lines = ["Module                  Size  Used by"]
        lines += [f"{name:<24}16384  0" for name in sorted(self.modules)]
        return _done(cmd, stdout="\n".join(lines) + "\n")

    def _cmd_modprobe(self, cmd):
        name, params = cmd[1], dict(a.split("=", 1) for a in cmd[2:] if "=" in a)
        self.load_module(name, **params)
        return _done(cmd)

    def _cmd_insmod(self, cmd):
        name = Path(cmd[1]).stem
        self.load_module(name, **dict(a.split("=", 1) for a in cmd[2:]))
        return _done(cmd)

    def _cmd_rmmod(self, cmd):
        if cmd[1] not in self.modules:
            return _done(cmd, 1, "", f"rmmod: ERROR: Module {cmd[1]} is not currently loaded")
        self.unload_module(cmd[1])
        return _done(cmd)

    def _cmd_systemctl(self, cmd):
        action = cmd[1]
        if action == "daemon-reload":
            return _done(cmd)
        name = cmd[-1].replace(".service", "")
        state = self.services.setdefault(name, [False, False])
        if action == "is-active":
            return _done(cmd, 0 if state[0] else 3)
        if action == "is-enabled":
            return _done(cmd, 0 if state[1] else 1)
        if action in ("start", "restart"):
            state[0] = True
        elif action == "stop":
            state[0] = False
        elif action == "enable":
            state[1] = True
        elif action == "disable":
            state[1] = False
        return _done(cmd)

    def _cmd_dpkg(self, cmd):
        return _done(cmd, 0 if cmd[-1] in self.packages else 1)

    def _cmd_apt_get(self, cmd):
        if cmd[1] == "install":
            self.packages.update(a for a in cmd[2:] if not a.startswith("-"))
        return _done(cmd)

    def _cmd_gcc(self, cmd):
        out = Path(cmd[cmd.index("-o") + 1])
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text("ELF")
        return _done(cmd)

    def _cmd_timeout(self, cmd):
        target = Path(cmd[-1])
        return _done(cmd, 0 if target.exists() else 1)

    def _cmd_fprint_list_devices(self, cmd):
        return _done(cmd, stdout=self.fprint_output)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def host_settings(tmp_path) -> Settings:
    """Settings whose host paths, source tree and state dir live under tmp_path."""
    root = tmp_path / "host"
    source = tmp_path / "driver" / "src"
    source.mkdir(parents=True)
    for name in ("Makefile", "fp_xiaomi_driver.c", "fp_xiaomi_driver.h",
                 f"{MODULE_NAME}.ko", "libfp_xiaomi.c", "libfp_xiaomi.h"):
        (source / name).write_text(f"# {name}\n")
    (root / "sys" / "bus" / "usb").mkdir(parents=True)
    (root / "dev" / "bus" / "usb" / "001").mkdir(parents=True)
    (root / "dev" / "bus" / "usb" / "001" / "004").write_text("")
    (root / "lib" / "modules" / KERNEL_RELEASE / "build").mkdir(parents=True)
    (root / "etc").mkdir(parents=True, exist_ok=True)
    (root / "etc" / "os-release").write_text(
        'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n'
        'PRETTY_NAME="Ubuntu 22.04.3 LTS"\n'
    )
    return Settings(host_root=root, source_dir=source, state_dir=tmp_path / "state")


@pytest.fixture
def fake_host(host_settings):
    """FakeHost patched in for subprocess.run and shutil.which."""
    host = FakeHost(host_settings)
    with patch("fp_installer.core.runner.subprocess.run", side_effect=host.run), \
         patch("fp_installer.core.runner.shutil.which", side_effect=host.which):
        yield host


@pytest.fixture
def runner() -> CommandRunner:
    return CommandRunner()


@pytest.fixture
def ubuntu_profile() -> SystemProfile:
    return SystemProfile(
        distribution_id="ubuntu",
        distribution_version="22.04",
        package_manager_id="apt",
        init_system_id="systemd",
        detected_device_ids=frozenset({"2717:0368", "1d6b:0002"}),
        kernel_release=KERNEL_RELEASE,
        pretty_name="Ubuntu 22.04.3 LTS",
    )


@pytest.fixture
def temp_db(tmp_path):
    """DataStore with a temporary SQLite database."""
    db_path = str(tmp_path / "test.db")
    store = DataStore(db_path=db_path)
    yield store
    store.close()
