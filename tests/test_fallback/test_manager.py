"""Tests for fp_installer.fallback.manager — FallbackManager lifecycle."""

from __future__ import annotations

import fcntl

import pytest

from fp_installer.core.errors import (
    AlreadyInstalledError,
    LockHeldError,
    NoBackupError,
    StrategyActivationError,
    UnknownStrategyError,
)
from fp_installer.core.host import HostInspector
from fp_installer.core.models import Lifecycle, Outcome, Verdict
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import (
    FPRINTD_SERVICE,
    MODULE_NAME,
    MONITOR_SERVICE,
    USERSPACE_SERVICE,
)
from fp_installer.fallback.manager import FallbackManager

ORIGINAL_RULES = 'SUBSYSTEM=="usb", ATTRS{idVendor}=="2717", MODE="0664"\n'


@pytest.fixture
def manager(host_settings, fake_host):
    return FallbackManager(host_settings, CommandRunner())


@pytest.fixture
def primary_host(host_settings, fake_host):
    """A host where the primary driver install succeeded."""
    fake_host.load_module(MODULE_NAME)
    fake_host.set_service(FPRINTD_SERVICE, active=True, enabled=True)
    rules = host_settings.rules_path
    rules.parent.mkdir(parents=True, exist_ok=True)
    rules.write_text(ORIGINAL_RULES)
    return fake_host


def _live(settings):
    host = HostInspector(settings, CommandRunner())
    rules = settings.rules_path
    return {
        "modules": host.loaded_modules(),
        "rules": rules.read_text() if rules.is_file() else None,
        "services": host.service_states(settings.tracked_services),
    }


# ── install ───────────────────────────────────────────────────────────


class TestInstall:
    def test_install_writes_config_and_monitor(self, manager, host_settings, fake_host):
        result = manager.install()

        assert result.outcome == Outcome.SUCCESS
        config = host_settings.fallback_config_path.read_text()
        assert "FALLBACK_ENABLED=true" in config
        assert "DEFAULT_STRATEGY=generic_library" in config
        assert "AUTO_FALLBACK=true" in config
        assert "FALLBACK_TIMEOUT=30" in config
        unit = host_settings.unit_path(MONITOR_SERVICE).read_text()
        assert "fallback monitor" in unit
        assert fake_host.services[MONITOR_SERVICE][1] is True
        assert manager.store.read_state().lifecycle == Lifecycle.INSTALLED

    def test_second_install_is_already_installed(self, manager):
        manager.install()
        with pytest.raises(AlreadyInstalledError):
            manager.install()

    def test_reinstall_rewrites_config(self, manager, host_settings):
        manager.install()
        host_settings.fallback_config_path.write_text(
            "STATE_VERSION=1\nSTATE=installed\nDEFAULT_STRATEGY=minimal_driver\n"
        )
        result = manager.install(reinstall=True)
        assert result.outcome == Outcome.SUCCESS
        assert "DEFAULT_STRATEGY=generic_library" in host_settings.fallback_config_path.read_text()

    def test_install_while_active_is_noop(self, manager, primary_host, host_settings):
        manager.install()
        manager.activate("compatibility_mode")
        before = host_settings.fallback_config_path.read_text()

        with pytest.raises(AlreadyInstalledError, match="active"):
            manager.install(reinstall=True)
        assert host_settings.fallback_config_path.read_text() == before

    def test_install_without_systemd_warns(self, manager, fake_host, host_settings):
        fake_host.tools.discard("systemctl")
        result = manager.install()
        assert result.outcome == Outcome.WARNING
        assert host_settings.fallback_config_path.is_file()
        assert not host_settings.unit_path(MONITOR_SERVICE).exists()


# ── activate / restore ────────────────────────────────────────────────


class TestActivateRestore:
    def test_activate_then_restore_matches_snapshot(self, manager, primary_host, host_settings):
        manager.install()
        manager.activate("compatibility_mode")
        snapshot = manager.store.read_snapshot()
        assert snapshot is not None

        manager.restore()

        live = _live(host_settings)
        assert live["modules"] == snapshot.module_names()
        assert live["rules"] == snapshot.rules_copy
        assert live["services"] == snapshot.service_status

    def test_restore_userspace_matches_snapshot(self, manager, primary_host, host_settings):
        manager.install()
        manager.activate("user_space_only")
        snapshot = manager.store.read_snapshot()

        manager.restore()

        live = _live(host_settings)
        assert live["modules"] == snapshot.module_names()
        assert live["services"] == snapshot.service_status
        assert not host_settings.unit_path(USERSPACE_SERVICE).exists()
        assert not host_settings.userspace_library_path.exists()

    def test_restore_reinstates_removed_rules(self, manager, primary_host, host_settings):
        manager.install()
        manager.activate("generic_library")
        host_settings.rules_path.write_text("# clobbered\n")

        manager.restore()

        assert host_settings.rules_path.read_text() == ORIGINAL_RULES

    def test_restore_without_backup_raises_and_mutates_nothing(
        self, manager, primary_host, host_settings
    ):
        manager.install()
        config_before = host_settings.fallback_config_path.read_text()
        primary_host.calls.clear()

        with pytest.raises(NoBackupError):
            manager.restore()

        assert primary_host.mutations == []
        assert host_settings.fallback_config_path.read_text() == config_before
        assert host_settings.rules_path.read_text() == ORIGINAL_RULES

    def test_restore_consumes_snapshot(self, manager, primary_host):
        manager.install()
        manager.activate("compatibility_mode")
        manager.restore()

        assert manager.store.read_state().active_strategy is None
        assert manager.store.read_state().installed
        with pytest.raises(NoBackupError):
            manager.restore()

    def test_activate_requires_install(self, manager, primary_host):
        with pytest.raises(StrategyActivationError, match="not installed"):
            manager.activate("compatibility_mode")

    def test_unknown_strategy(self, manager):
        manager.install()
        with pytest.raises(UnknownStrategyError):
            manager.activate("turbo_mode")

    def test_hand_edited_config_still_activates(self, manager, primary_host, host_settings):
        manager.install()
        path = host_settings.fallback_config_path
        path.write_text(path.read_text().replace("FALLBACK_TIMEOUT=30", "FALLBACK_TIMEOUT=30s"))

        result = manager.activate("compatibility_mode")

        assert result.outcome == Outcome.SUCCESS
        assert "FALLBACK_TIMEOUT=30\n" in path.read_text()

    def test_preflight_failure_leaves_state_installed(self, manager, primary_host, host_settings):
        manager.install()
        host_settings.module_artifact.unlink()
        primary_host.calls.clear()

        with pytest.raises(StrategyActivationError, match="not found"):
            manager.activate("minimal_driver")

        state = manager.store.read_state()
        assert state.lifecycle == Lifecycle.INSTALLED
        assert state.active_strategy is None
        assert not any(c[0] in ("rmmod", "insmod") for c in primary_host.mutations)
        assert MODULE_NAME in primary_host.modules

    def test_failed_activation_rolls_back(self, manager, primary_host, host_settings):
        manager.install()
        primary_host.fail("insmod")

        with pytest.raises(StrategyActivationError, match="insmod failed"):
            manager.activate("minimal_driver")

        state = manager.store.read_state()
        assert state.active_strategy is None
        assert state.lifecycle == Lifecycle.INSTALLED
        assert not host_settings.minimal_options_path.exists()

    def test_userspace_with_no_kernel_module(self, manager, fake_host):
        fake_host.set_service(FPRINTD_SERVICE, active=True, enabled=True)
        manager.install()

        result = manager.activate("UserSpaceOnly")

        assert result.outcome == Outcome.SUCCESS
        status = manager.status()
        assert status.services[USERSPACE_SERVICE].active
        assert not status.kernel_module_loaded
        assert status.active_strategy == "user_space_only"


class TestStrategySwitch:
    def test_second_activation_replaces_first(self, manager, primary_host, host_settings):
        manager.install()
        manager.activate("user_space_only")
        manager.activate("compatibility_mode")

        status = manager.status()
        assert status.active_strategy == "compatibility_mode"
        assert not status.services[USERSPACE_SERVICE].active
        assert not host_settings.unit_path(USERSPACE_SERVICE).exists()
        assert not host_settings.userspace_library_path.exists()
        assert primary_host.modules[MODULE_NAME] == {
            "compatibility_mode": "1", "debug": "1",
        }

    def test_minimal_then_generic_leaves_no_minimal_effects(
        self, manager, primary_host, host_settings
    ):
        manager.install()
        manager.activate("minimal_driver")
        assert host_settings.minimal_options_path.exists()

        manager.activate("generic_library")

        assert not host_settings.minimal_options_path.exists()
        assert MODULE_NAME not in primary_host.modules
        assert host_settings.generic_descriptor_path.exists()
        assert manager.status().active_strategy == "generic_library"

    def test_snapshot_kept_across_switch(self, manager, primary_host):
        manager.install()
        manager.activate("compatibility_mode")
        first = manager.store.read_snapshot()

        manager.activate("minimal_driver")

        assert manager.store.read_snapshot().timestamp == first.timestamp
        assert MODULE_NAME in first.module_names()


# ── backup ────────────────────────────────────────────────────────────


class TestBackup:
    def test_backup_captures_host(self, manager, primary_host):
        snapshot = manager.backup()
        assert MODULE_NAME in snapshot.module_names()
        assert snapshot.rules_copy == ORIGINAL_RULES
        assert snapshot.service_status[FPRINTD_SERVICE].active

    def test_backup_while_active_returns_existing(self, manager, primary_host):
        manager.install()
        manager.activate("compatibility_mode")
        existing = manager.store.read_snapshot()

        again = manager.backup()

        assert again.timestamp == existing.timestamp
        assert again.service_status == existing.service_status


# ── test ──────────────────────────────────────────────────────────────


class TestVerdict:
    def test_fail_without_device(self, manager, fake_host):
        fake_host.usb_lines = []
        result = manager.test()
        assert result.verdict == Verdict.FAIL
        assert result.outcome == Outcome.FAILURE

    def test_pass_when_all_paths_work(self, manager, primary_host):
        primary_host.fprint_output = "Found 1 device: Xiaomi Fingerprint Scanner\n"
        manager.install()
        manager.activate("compatibility_mode")

        result = manager.test()

        assert result.verdict == Verdict.PASS
        state = manager.store.read_state()
        assert state.lifecycle == Lifecycle.TESTED
        assert state.last_verdict == Verdict.PASS
        assert state.active_strategy == "compatibility_mode"

    def test_partial_when_not_recognized(self, manager, primary_host):
        manager.install()
        manager.activate("compatibility_mode")
        result = manager.test()
        assert result.verdict == Verdict.PARTIAL
        assert result.outcome == Outcome.WARNING

    def test_has_no_driver_side_effects(self, manager, primary_host):
        manager.install()
        manager.activate("compatibility_mode")
        primary_host.calls.clear()

        manager.test()
        manager.test()

        assert not any(c[0] in ("rmmod", "insmod", "modprobe") for c in primary_host.mutations)
        assert not any(c[0] == "systemctl" for c in primary_host.mutations)

    def test_without_active_strategy_records_nothing(self, manager, primary_host, host_settings):
        manager.install()
        before = host_settings.fallback_config_path.read_text()
        manager.test()
        assert host_settings.fallback_config_path.read_text() == before


# ── monitor / status / lock ───────────────────────────────────────────


class TestMonitor:
    def test_activates_default_when_driver_missing(self, manager, fake_host):
        fake_host.packages.update({"libfprint-2-dev", "fprintd"})
        manager.install()
        result = manager.monitor()
        assert "generic_library" in result.message
        assert manager.store.read_state().active_strategy == "generic_library"

    def test_noop_when_driver_loaded(self, manager, primary_host):
        manager.install()
        result = manager.monitor()
        assert result.outcome == Outcome.SUCCESS
        assert manager.store.read_state().active_strategy is None

    def test_noop_when_not_installed(self, manager, fake_host):
        result = manager.monitor()
        assert "disabled" in result.message


class TestStatus:
    def test_reports_live_state(self, manager, primary_host):
        status = manager.status()
        assert status.device_detected
        assert status.kernel_module_loaded
        assert status.services[FPRINTD_SERVICE].active
        assert status.fallback_installed is False
        assert status.distribution == "Ubuntu 22.04.3 LTS"

    def test_reads_fallback_config(self, manager, primary_host):
        manager.install()
        status = manager.status()
        assert status.fallback_installed
        assert status.fallback_config["DEFAULT_STRATEGY"] == "generic_library"

    def test_primary_driver_has_no_active_strategy(self, manager, primary_host):
        manager.install()
        assert manager.status().active_strategy is None

    def test_active_strategy_follows_host_not_record(self, manager, primary_host):
        manager.install()
        manager.activate("minimal_driver")
        assert manager.status().active_strategy == "minimal_driver"

        # module unloaded behind the manager's back
        primary_host.unload_module(MODULE_NAME)

        status = manager.status()
        assert status.active_strategy is None
        assert status.recorded_strategy == "minimal_driver"

    def test_list_strategies(self, manager):
        names = [p.strategy.value for p in manager.list_strategies()]
        assert names == [
            "generic_library", "compatibility_mode", "minimal_driver", "user_space_only",
        ]


class TestLock:
    def test_concurrent_mutation_rejected(self, manager, primary_host, host_settings):
        manager.install()
        lock_path = host_settings.lock_path
        with open(lock_path, "a+") as held:
            fcntl.flock(held.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            with pytest.raises(LockHeldError):
                manager.activate("compatibility_mode")
            with pytest.raises(LockHeldError):
                manager.restore()
        assert manager.store.read_state().active_strategy is None

    def test_lock_released_after_operation(self, manager, primary_host, host_settings):
        manager.install()
        manager.activate("compatibility_mode")

        with open(host_settings.lock_path, "a+") as probe:
            fcntl.flock(probe.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(probe.fileno(), fcntl.LOCK_UN)
        assert host_settings.lock_path.read_text().strip().isdigit()
