"""Environment detection — distribution, package manager, init system, USB devices."""

from __future__ import annotations

import logging
import platform
import re
import shlex
from pathlib import Path
from typing import Callable, Optional

from fp_installer.core.host import HostInspector
from fp_installer.core.models import UNKNOWN, SystemProfile
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import Settings

logger = logging.getLogger(__name__)

# Probe order matters: dnf hosts often ship a yum shim.
PACKAGE_MANAGERS: list[tuple[str, str]] = [
    ("apt", "apt"),
    ("dnf", "dnf"),
    ("yum", "yum"),
    ("zypper", "zypper"),
    ("pacman", "pacman"),
    ("emerge", "emerge"),
    ("apk", "apk"),
    ("xbps", "xbps-install"),
]

Which = Callable[[str], Optional[str]]


class EnvironmentProber:
    """Detects everything about the host. Never raises."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.host = HostInspector(settings, runner)

    def probe(self) -> SystemProfile:
        distro_id, distro_version, pretty = detect_distribution(self.settings)
        profile = SystemProfile(
            distribution_id=distro_id,
            distribution_version=distro_version,
            package_manager_id=detect_package_manager(self.runner.which),
            init_system_id=_detect_init_system(self.runner.which),
            detected_device_ids=self._detect_device_ids(),
            kernel_release=detect_kernel_release(),
            pretty_name=pretty,
        )
        logger.info(
            "Probed %s %s (pm=%s, init=%s, devices=%s)",
            profile.distribution_id, profile.distribution_version,
            profile.package_manager_id, profile.init_system_id,
            sorted(profile.detected_device_ids),
        )
        return profile

    def _detect_device_ids(self) -> frozenset[str]:
        try:
            return self.host.device_ids()
        except Exception:
            logger.debug("USB device probe failed", exc_info=True)
            return frozenset()


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``/etc/os-release`` KEY=value lines, unquoting values."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


def detect_distribution(settings: Settings) -> tuple[str, str, str]:
    """Return (id, version, pretty name); unknown parts are the sentinel."""
    os_release = _read(settings.os_release)
    if os_release is not None:
        values = parse_os_release(os_release)
        distro_id = values.get("ID", "").lower() or UNKNOWN
        return (
            distro_id,
            values.get("VERSION_ID") or UNKNOWN,
            values.get("PRETTY_NAME", distro_id),
        )

    redhat = _read(settings.host_path("etc", "redhat-release"))
    if redhat is not None:
        distro_id = UNKNOWN
        for marker, name in (("CentOS", "centos"), ("Red Hat", "rhel"), ("Fedora", "fedora")):
            if marker in redhat:
                distro_id = name
                break
        match = re.search(r"\d+", redhat)
        return distro_id, match.group(0) if match else UNKNOWN, redhat.strip()

    debian = _read(settings.host_path("etc", "debian_version"))
    if debian is not None:
        return "debian", debian.strip() or UNKNOWN, f"Debian {debian.strip()}"

    logger.warning("Unable to detect Linux distribution")
    return UNKNOWN, UNKNOWN, ""


def detect_package_manager(which: Which) -> str:
    for manager_id, binary in PACKAGE_MANAGERS:
        if which(binary):
            return manager_id
    return UNKNOWN


def _detect_init_system(which: Which) -> str:
    if which("systemctl"):
        return "systemd"
    if which("service"):
        return "sysv"
    return UNKNOWN


def detect_kernel_release() -> str:
    if platform.system() != "Linux":
        return UNKNOWN
    return platform.release() or UNKNOWN


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text()
    except OSError:
        return None
