"""Settings — host paths and tunables, resolved env var → store config → default."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

MODULE_NAME = "fp_xiaomi_driver"
MODULE_FAMILY = "fp_xiaomi"
DEVICE_NODE = "fp_xiaomi0"
RULES_FILENAME = "60-fp-xiaomi.rules"
FPRINTD_SERVICE = "fprintd"
MONITOR_SERVICE = "fp-xiaomi-fallback"
USERSPACE_SERVICE = "fp-xiaomi-userspace"
TRACKED_SERVICES = (FPRINTD_SERVICE, MONITOR_SERVICE, USERSPACE_SERVICE)

logger = logging.getLogger(__name__)

_ENV_PREFIX = "FP_INSTALLER_"
_DEFAULT_STATE_DIR = os.path.join(str(Path.home()), ".fp-installer")


def _resolve(key: str, default: str, store_config: Optional[dict[str, str]]) -> str:
    env_val = os.environ.get(_ENV_PREFIX + key.upper())
    if env_val:
        return env_val
    if store_config and store_config.get(key):
        return store_config[key]
    return default


def _resolve_int(key: str, default: int, store_config: Optional[dict[str, str]]) -> int:
    raw = _resolve(key, str(default), store_config)
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %d", key, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    host_root: Path = Path("/")
    source_dir: Path = Path("src")
    state_dir: Path = Path(_DEFAULT_STATE_DIR)
    build_timeout: int = 600
    command_timeout: int = 30
    module_name: str = MODULE_NAME
    tracked_services: tuple[str, ...] = field(default=TRACKED_SERVICES)
    report_file: Optional[Path] = None

    @classmethod
    def load(cls, store_config: Optional[dict[str, str]] = None) -> "Settings":
        """Build settings from FP_INSTALLER_* env vars, then store config."""
        return cls(
            host_root=Path(_resolve("host_root", "/", store_config)),
            source_dir=Path(
                _resolve("source_dir", os.path.join(os.getcwd(), "src"), store_config)
            ),
            state_dir=Path(_resolve("state_dir", _DEFAULT_STATE_DIR, store_config)),
            build_timeout=_resolve_int("build_timeout", 600, store_config),
            command_timeout=_resolve_int("command_timeout", 30, store_config),
        )

    def host_path(self, *parts: str) -> Path:
        """Path on the managed host, re-rooted under ``host_root``."""
        return self.host_root.joinpath(*parts)

    # ── Host paths ───────────────────────────────────────────────────

    @property
    def os_release(self) -> Path:
        return self.host_path("etc", "os-release")

    @property
    def rules_path(self) -> Path:
        return self.host_path("etc", "udev", "rules.d", RULES_FILENAME)

    @property
    def modules_load_path(self) -> Path:
        return self.host_path("etc", "modules-load.d", "fp_xiaomi.conf")

    @property
    def modprobe_conf_path(self) -> Path:
        return self.host_path("etc", "modprobe.d", "fp_xiaomi.conf")

    @property
    def minimal_options_path(self) -> Path:
        return self.host_path("etc", "modprobe.d", "fp_xiaomi_minimal.conf")

    @property
    def device_node(self) -> Path:
        return self.host_path("dev", DEVICE_NODE)

    @property
    def usb_bus_dir(self) -> Path:
        return self.host_path("dev", "bus", "usb")

    @property
    def sys_usb(self) -> Path:
        return self.host_path("sys", "bus", "usb")

    def module_param_path(self, param: str) -> Path:
        return self.host_path("sys", "module", self.module_name, "parameters", param)

    def kernel_build_dir(self, release: str) -> Path:
        return self.host_path("lib", "modules", release, "build")

    def installed_module_path(self, release: str) -> Path:
        """Where ``make install`` (kbuild modules_install) places the module."""
        return self.host_path("lib", "modules", release, "extra", f"{self.module_name}.ko")

    @property
    def systemd_dir(self) -> Path:
        return self.host_path("etc", "systemd", "system")

    def unit_path(self, service: str) -> Path:
        return self.systemd_dir / f"{service}.service"

    @property
    def fprintd_conf_path(self) -> Path:
        return self.host_path("etc", "fprintd", "fprintd.conf")

    @property
    def fprintd_override_path(self) -> Path:
        return self.systemd_dir / "fprintd.service.d" / "xiaomi-fpc.conf"

    @property
    def fallback_config_path(self) -> Path:
        return self.host_path("etc", "fp-xiaomi-fallback", "config")

    @property
    def generic_descriptor_path(self) -> Path:
        return self.host_path("etc", "fp-xiaomi-fallback", "xiaomi_generic.xml")

    @property
    def fallback_var_dir(self) -> Path:
        return self.host_path("var", "lib", "fp-xiaomi-fallback")

    @property
    def backup_dir(self) -> Path:
        return self.fallback_var_dir / "backup"

    @property
    def lock_path(self) -> Path:
        return self.fallback_var_dir / ".lock"

    @property
    def userspace_library_path(self) -> Path:
        return self.host_path("usr", "local", "lib", "libfp_xiaomi_fallback.so")

    # ── Driver source tree ───────────────────────────────────────────

    @property
    def module_artifact(self) -> Path:
        return self.source_dir / f"{self.module_name}.ko"

    @property
    def userspace_source(self) -> Path:
        return self.source_dir / "libfp_xiaomi.c"

    @property
    def bundled_rules(self) -> Path:
        return self.source_dir.parent / "udev" / RULES_FILENAME

    # ── Local tool state ─────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return self.state_dir / "history.db"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "fp-installer.log"

    @property
    def report_path(self) -> Path:
        return self.report_file or self.state_dir / "last-report.json"
