"""Durable fallback state — one versioned KEY=value record plus the backup directory.

Layout on the host::

    /etc/fp-xiaomi-fallback/config             FallbackState + FallbackConfig
    /var/lib/fp-xiaomi-fallback/backup/
        loaded_modules.txt                     lsmod output at backup time
        60-fp-xiaomi.rules                     copy of the rules file (optional)
        snapshot.ini                           timestamp + service status
    /var/lib/fp-xiaomi-fallback/.lock          advisory single-writer lock
"""

from __future__ import annotations

import configparser
import fcntl
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from fp_installer.core.errors import LockHeldError
from fp_installer.core.models import (
    BackupSnapshot,
    FallbackConfig,
    FallbackState,
    Lifecycle,
    ServiceState,
    Verdict,
)
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import RULES_FILENAME, Settings

logger = logging.getLogger(__name__)

STATE_VERSION = 1

_MODULES_FILE = "loaded_modules.txt"
_SNAPSHOT_FILE = "snapshot.ini"


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _fmt_bool(value: bool) -> str:
    return "true" if value else "false"


def _int_value(values: dict[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r in fallback config; using %d", key, raw, default)
        return default


def parse_config(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


def render_state(state: FallbackState) -> str:
    cfg = state.config
    lines = [
        "# Xiaomi Fingerprint Fallback Configuration (managed by fp-installer)",
        f"STATE_VERSION={STATE_VERSION}",
        f"FALLBACK_ENABLED={_fmt_bool(cfg.enabled)}",
        f"DEFAULT_STRATEGY={cfg.default_strategy}",
        f"AUTO_FALLBACK={_fmt_bool(cfg.auto_fallback)}",
        f"FALLBACK_TIMEOUT={cfg.timeout}",
        f"STATE={state.lifecycle.value}",
        f"ACTIVE_STRATEGY={state.active_strategy or ''}",
        f"LAST_VERDICT={state.last_verdict.value if state.last_verdict else ''}",
    ]
    return "\n".join(lines) + "\n"


def state_from_values(values: dict[str, str]) -> FallbackState:
    """Build a FallbackState from parsed config; tolerates pre-versioned files."""
    config = FallbackConfig(
        enabled=_to_bool(values.get("FALLBACK_ENABLED", "true")),
        default_strategy=values.get("DEFAULT_STRATEGY") or FallbackConfig.default_strategy,
        auto_fallback=_to_bool(values.get("AUTO_FALLBACK", "true")),
        timeout=_int_value(values, "FALLBACK_TIMEOUT", FallbackConfig.timeout),
    )
    try:
        lifecycle = Lifecycle(values.get("STATE") or Lifecycle.INSTALLED.value)
    except ValueError:
        logger.warning("Ignoring invalid STATE=%r in fallback config", values.get("STATE"))
        lifecycle = Lifecycle.INSTALLED
    verdict = None
    if values.get("LAST_VERDICT"):
        try:
            verdict = Verdict(values["LAST_VERDICT"])
        except ValueError:
            logger.warning(
                "Ignoring invalid LAST_VERDICT=%r in fallback config", values["LAST_VERDICT"]
            )
    return FallbackState(
        lifecycle=lifecycle,
        active_strategy=values.get("ACTIVE_STRATEGY") or None,
        last_verdict=verdict,
        config=config,
    )


class FallbackStore:
    """Narrow read/write interface over the fallback manager's durable state."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner

    # ── State record ─────────────────────────────────────────────────

    def read_raw(self) -> dict[str, str]:
        try:
            return parse_config(self.settings.fallback_config_path.read_text())
        except OSError:
            return {}

    def read_state(self) -> FallbackState:
        if not self.settings.fallback_config_path.is_file():
            return FallbackState()
        values = self.read_raw()
        version = _int_value(values, "STATE_VERSION", 0)
        if version > STATE_VERSION:
            logger.warning(
                "Fallback state version %d is newer than supported %d",
                version, STATE_VERSION,
            )
        return state_from_values(values)

    def write_state(self, state: FallbackState) -> None:
        self.runner.write_file(self.settings.fallback_config_path, render_state(state))

    def clear_state(self) -> None:
        self.runner.remove_file(self.settings.fallback_config_path)

    # ── Backup snapshot ──────────────────────────────────────────────

    def has_snapshot(self) -> bool:
        return (self.settings.backup_dir / _SNAPSHOT_FILE).is_file()

    def read_snapshot(self) -> Optional[BackupSnapshot]:
        backup = self.settings.backup_dir
        if not self.has_snapshot():
            return None
        parser = configparser.ConfigParser()
        parser.read_string((backup / _SNAPSHOT_FILE).read_text())
        services = {}
        if parser.has_section("services"):
            for name, raw in parser.items("services"):
                flags = {f.strip() for f in raw.split(",")}
                services[name] = ServiceState(
                    active="active" in flags, enabled="enabled" in flags
                )
        rules_file = backup / RULES_FILENAME
        modules_file = backup / _MODULES_FILE
        return BackupSnapshot(
            timestamp=datetime.fromisoformat(parser.get("snapshot", "timestamp")),
            loaded_modules=modules_file.read_text() if modules_file.is_file() else "",
            service_status=services,
            rules_copy=rules_file.read_text() if rules_file.is_file() else None,
        )

    def write_snapshot(self, snapshot: BackupSnapshot) -> None:
        backup = self.settings.backup_dir
        self.runner.write_file(backup / _MODULES_FILE, snapshot.loaded_modules)
        if snapshot.rules_copy is not None:
            self.runner.write_file(backup / RULES_FILENAME, snapshot.rules_copy)
        else:
            self.runner.remove_file(backup / RULES_FILENAME)

        lines = [
            "[snapshot]",
            f"timestamp = {snapshot.timestamp.isoformat()}",
            f"rules_present = {_fmt_bool(snapshot.rules_copy is not None)}",
            "",
            "[services]",
        ]
        for name, state in sorted(snapshot.service_status.items()):
            flags = [
                "active" if state.active else "inactive",
                "enabled" if state.enabled else "disabled",
            ]
            lines.append(f"{name} = {','.join(flags)}")
        self.runner.write_file(backup / _SNAPSHOT_FILE, "\n".join(lines) + "\n")

    def clear_snapshot(self) -> None:
        backup = self.settings.backup_dir
        for name in (_SNAPSHOT_FILE, _MODULES_FILE, RULES_FILENAME):
            self.runner.remove_file(backup / name)

    # ── Single-writer lock ───────────────────────────────────────────

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Exclusive, non-blocking advisory lock; contention raises LockHeldError."""
        if self.runner.dry_run:
            yield
            return
        path = self.settings.lock_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a+") as lock_fd:
            try:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                lock_fd.seek(0)
                owner = lock_fd.read().strip() or "unknown"
                raise LockHeldError(
                    f"Another fallback operation is in progress (PID {owner})"
                )
            try:
                lock_fd.seek(0)
                lock_fd.truncate()
                lock_fd.write(f"{os.getpid()}\n")
                lock_fd.flush()
                logger.debug("Acquired fallback lock %s", path)
                yield
            finally:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)
