"""Tests for fp_installer.core.uninstall — Uninstaller."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from fp_installer.core.errors import StrategyActiveError
from fp_installer.core.models import Outcome
from fp_installer.core.rules import RulesInstaller
from fp_installer.core.runner import CommandRunner
from fp_installer.core.services import FPRINTD_CONF, FPRINTD_OVERRIDE
from fp_installer.core.settings import MODULE_NAME, MONITOR_SERVICE
from fp_installer.core.uninstall import Uninstaller
from fp_installer.fallback.manager import FallbackManager

KERNEL_RELEASE = "6.5.0-14-generic"


@pytest.fixture(autouse=True)
def kernel_release():
    with patch(
        "fp_installer.core.environment.detect_kernel_release",
        return_value=KERNEL_RELEASE,
    ):
        yield


@pytest.fixture
def installed_host(host_settings, fake_host):
    """A host after a full install with the fallback system provisioned."""
    runner = CommandRunner()
    RulesInstaller(host_settings, runner).apply()
    host_settings.fprintd_conf_path.parent.mkdir(parents=True, exist_ok=True)
    host_settings.fprintd_conf_path.write_text(FPRINTD_CONF)
    host_settings.fprintd_override_path.parent.mkdir(parents=True, exist_ok=True)
    host_settings.fprintd_override_path.write_text(FPRINTD_OVERRIDE)
    module = host_settings.installed_module_path(KERNEL_RELEASE)
    module.parent.mkdir(parents=True)
    module.write_text("ELF")
    FallbackManager(host_settings, runner).install()
    fake_host.load_module(MODULE_NAME)
    fake_host.calls.clear()
    return fake_host


def _installed_paths(settings):
    return [
        settings.installed_module_path(KERNEL_RELEASE),
        settings.rules_path,
        settings.modules_load_path,
        settings.modprobe_conf_path,
        settings.fprintd_conf_path,
        settings.fprintd_override_path,
        settings.fallback_config_path,
        settings.unit_path(MONITOR_SERVICE),
    ]


class TestUninstall:
    def test_removes_everything_installed(self, host_settings, installed_host):
        assert all(p.exists() for p in _installed_paths(host_settings))

        result = Uninstaller(host_settings, CommandRunner()).run()

        assert result.outcome == Outcome.SUCCESS
        assert not any(p.exists() for p in _installed_paths(host_settings))
        assert MODULE_NAME not in installed_host.modules
        for cmd in (
            ["rmmod", MODULE_NAME],
            ["depmod", "-a"],
            ["udevadm", "control", "--reload-rules"],
            ["systemctl", "disable", f"{MONITOR_SERVICE}.service"],
            ["systemctl", "daemon-reload"],
        ):
            assert cmd in installed_host.calls

    def test_second_run_is_noop(self, host_settings, installed_host):
        Uninstaller(host_settings, CommandRunner()).run()
        installed_host.calls.clear()

        result = Uninstaller(host_settings, CommandRunner()).run()

        assert result.message == "Nothing to uninstall"
        assert installed_host.mutations == []

    def test_keeps_user_edited_fprintd_conf(self, host_settings, installed_host):
        host_settings.fprintd_conf_path.write_text("[fprintd]\ntimeout = 60\n")
        Uninstaller(host_settings, CommandRunner()).run()
        assert host_settings.fprintd_conf_path.is_file()
        assert not host_settings.fprintd_override_path.exists()

    def test_module_in_use_warns_but_removes_files(self, host_settings, installed_host):
        installed_host.fail("rmmod")

        result = Uninstaller(host_settings, CommandRunner()).run()

        assert result.outcome == Outcome.WARNING
        assert "reboot" in result.message
        assert not host_settings.rules_path.exists()

    def test_refuses_while_strategy_active(self, host_settings, installed_host):
        FallbackManager(host_settings, CommandRunner()).activate("compatibility_mode")
        installed_host.calls.clear()

        with pytest.raises(StrategyActiveError):
            Uninstaller(host_settings, CommandRunner()).run()

        assert installed_host.mutations == []
        assert host_settings.rules_path.exists()

    def test_dry_run_removes_nothing(self, host_settings, installed_host):
        runner = CommandRunner(dry_run=True)

        result = Uninstaller(host_settings, runner).run()

        assert result.outcome == Outcome.SUCCESS
        assert all(p.exists() for p in _installed_paths(host_settings))
        assert installed_host.mutations == []
        assert f"remove {host_settings.rules_path}" in runner.recorded
        assert f"$ rmmod {MODULE_NAME}" in runner.recorded
