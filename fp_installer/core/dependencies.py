"""Dependency installer — per package manager build/runtime prerequisites."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from fp_installer.core.errors import DependencyError, DetectionError
from fp_installer.core.models import UNKNOWN, CheckResult, Outcome, SystemProfile
from fp_installer.core.runner import CommandRunner, tail

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT = 900


@dataclass(frozen=True)
class PackageSet:
    """Required packages must install; optional failures only warn."""

    manager_id: str
    required: tuple[str, ...]
    optional: tuple[str, ...] = ()
    install_cmd: tuple[str, ...] = ()
    query_cmd: tuple[str, ...] = ()
    refresh_cmd: tuple[str, ...] = ()
    extras: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def for_distribution(self, distribution_id: str) -> tuple[str, ...]:
        return self.optional + self.extras.get(distribution_id, ())


def _headers(kernel_release: str, prefix: str) -> str:
    if kernel_release and kernel_release != UNKNOWN:
        return f"{prefix}{kernel_release}"
    return prefix.rstrip("-")


def package_sets(kernel_release: str = UNKNOWN) -> dict[str, PackageSet]:
    """The fixed dependency set for every supported package manager."""
    return {
        "apt": PackageSet(
            "apt",
            required=("build-essential", _headers(kernel_release, "linux-headers-"),
                      "libusb-1.0-0-dev", "pkg-config"),
            optional=("libfprint-2-dev", "fprintd", "dkms", "udev", "git", "cmake"),
            install_cmd=("apt-get", "install", "-y"),
            query_cmd=("dpkg", "-s"),
            refresh_cmd=("apt-get", "update"),
            extras={"ubuntu": ("software-properties-common",),
                    "debian": ("module-assistant",)},
        ),
        "dnf": PackageSet(
            "dnf",
            required=("gcc", "make", "kernel-devel", "kernel-headers", "libusb1-devel"),
            optional=("libfprint-devel", "fprintd", "dkms", "systemd-udev", "git", "cmake"),
            install_cmd=("dnf", "install", "-y"),
            query_cmd=("rpm", "-q"),
            extras={d: ("epel-release",) for d in ("rhel", "centos", "rocky", "almalinux")},
        ),
        "yum": PackageSet(
            "yum",
            required=("gcc", "make", _headers(kernel_release, "kernel-devel-"),
                      "libusb1-devel"),
            optional=("libfprint-devel", "fprintd", "git", "cmake3", "epel-release"),
            install_cmd=("yum", "install", "-y"),
            query_cmd=("rpm", "-q"),
        ),
        "zypper": PackageSet(
            "zypper",
            required=("gcc", "make", "kernel-default-devel", "libusb-1_0-devel"),
            optional=("libfprint-devel", "fprintd", "dkms", "udev", "git", "cmake"),
            install_cmd=("zypper", "--non-interactive", "install"),
            query_cmd=("rpm", "-q"),
        ),
        "pacman": PackageSet(
            "pacman",
            required=("base-devel", "linux-headers", "libusb"),
            optional=("libfprint", "fprintd", "dkms", "git", "cmake"),
            install_cmd=("pacman", "-S", "--needed", "--noconfirm"),
            query_cmd=("pacman", "-Q"),
        ),
        "emerge": PackageSet(
            "emerge",
            required=("sys-kernel/gentoo-sources", "dev-libs/libusb"),
            optional=("sys-auth/libfprint", "sys-auth/fprintd", "dev-vcs/git", "dev-util/cmake"),
            install_cmd=("emerge", "--noreplace", "--ask=n"),
            query_cmd=("portageq", "has_version", "/"),
        ),
        "apk": PackageSet(
            "apk",
            required=("build-base", "linux-headers", "libusb-dev"),
            optional=("libfprint-dev", "fprintd", "eudev", "git", "cmake"),
            install_cmd=("apk", "add"),
            query_cmd=("apk", "info", "-e"),
        ),
        "xbps": PackageSet(
            "xbps",
            required=("base-devel", "linux-headers", "libusb-devel"),
            optional=("libfprint-devel", "fprintd", "git", "cmake"),
            install_cmd=("xbps-install", "-Sy"),
            query_cmd=("xbps-query",),
        ),
    }


SUPPORTED_MANAGERS = tuple(package_sets())


class DependencyInstaller:
    """Installs the fixed dependency set. Safe to re-run."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def resolve(self, package_manager_id: str, kernel_release: str = UNKNOWN) -> PackageSet:
        """Return the package set, or raise DetectionError for unknown managers."""
        sets = package_sets(kernel_release)
        if package_manager_id not in sets:
            raise DetectionError(
                f"Unsupported or undetected package manager: {package_manager_id!r}",
            )
        return sets[package_manager_id]

    def missing(self, package_set: PackageSet, packages: tuple[str, ...]) -> list[str]:
        """Packages not currently installed."""
        return [
            pkg for pkg in packages
            if not self.runner.run(list(package_set.query_cmd) + [pkg], timeout=30).success
        ]

    def install(
        self, package_manager_id: str, profile: Optional[SystemProfile] = None
    ) -> CheckResult:
        kernel = profile.kernel_release if profile else UNKNOWN
        distro = profile.distribution_id if profile else UNKNOWN
        package_set = self.resolve(package_manager_id, kernel)

        missing_required = self.missing(package_set, package_set.required)
        missing_optional = self.missing(package_set, package_set.for_distribution(distro))
        if not missing_required and not missing_optional:
            return CheckResult(Outcome.SUCCESS, ("All dependencies already present",))

        if package_set.refresh_cmd:
            self.runner.run(list(package_set.refresh_cmd), timeout=INSTALL_TIMEOUT, mutates=True)

        if missing_required:
            result = self._install(package_set, missing_required)
            if not result.success:
                raise DependencyError(
                    f"Failed to install {', '.join(missing_required)}: "
                    f"{tail(result.output)}"
                )

        failed_optional = [
            pkg for pkg in missing_optional
            if not self._install(package_set, [pkg]).success
        ]
        installed = len(missing_required) + len(missing_optional) - len(failed_optional)
        if failed_optional:
            return CheckResult(
                Outcome.WARNING,
                (f"Installed {installed} package(s); optional packages unavailable: "
                 f"{', '.join(failed_optional)}",),
            )
        return CheckResult(Outcome.SUCCESS, (f"Installed {installed} package(s)",))

    def _install(self, package_set: PackageSet, packages: list[str]):
        logger.info("Installing with %s: %s", package_set.manager_id, " ".join(packages))
        return self.runner.run(
            list(package_set.install_cmd) + packages,
            timeout=INSTALL_TIMEOUT,
            mutates=True,
        )
