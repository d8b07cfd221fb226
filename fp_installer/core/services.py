"""Service configurator — fprintd configuration and enablement."""

from __future__ import annotations

import logging

from fp_installer.core.host import HostInspector
from fp_installer.core.models import CheckResult, Outcome, SystemProfile
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import FPRINTD_SERVICE, Settings

logger = logging.getLogger(__name__)

FPRINTD_CONF = """\
[fprintd]
timeout = 30

[storage]
type = file

[xiaomi_fpc]
device_timeout = 15
enroll_timeout = 30
verify_timeout = 10
max_enroll_stages = 5
"""

FPRINTD_OVERRIDE = """\
[Service]
Restart=on-failure
RestartSec=5
Environment="FP_XIAOMI_TIMEOUT=15000"
ExecStartPre=/bin/sh -c 'if [ -c /dev/fp_xiaomi0 ]; then chmod 664 /dev/fp_xiaomi0; chgrp plugdev /dev/fp_xiaomi0; fi'
"""

_PAM_HINTS = {
    "debian": "Run 'sudo pam-auth-update' to enable fingerprint login",
    "rhel": "Run 'sudo authselect select sssd with-fingerprint' to enable fingerprint login",
}
_FAMILIES = {
    "ubuntu": "debian", "debian": "debian", "linuxmint": "debian", "pop": "debian",
    "fedora": "rhel", "rhel": "rhel", "centos": "rhel", "rocky": "rhel", "almalinux": "rhel",
}


def pam_hint(distribution_id: str) -> str:
    return _PAM_HINTS.get(_FAMILIES.get(distribution_id, ""), "")


class ServiceConfigurator:
    """Enables and starts the services the driver needs end-to-end. Idempotent."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner
        self.host = HostInspector(settings, runner)

    def configure(self, profile: SystemProfile) -> CheckResult:
        if profile.init_system_id != "systemd":
            return CheckResult(
                Outcome.WARNING,
                (f"Init system {profile.init_system_id!r} is not managed; "
                 f"enable {FPRINTD_SERVICE} manually",),
            )

        changed = self.runner.write_file(self.settings.fprintd_conf_path, FPRINTD_CONF)
        changed |= self.runner.write_file(self.settings.fprintd_override_path, FPRINTD_OVERRIDE)
        if changed:
            self.runner.run(["systemctl", "daemon-reload"], mutates=True)

        state = self.host.service_state(FPRINTD_SERVICE)
        if not state.enabled:
            self.runner.run(["systemctl", "enable", f"{FPRINTD_SERVICE}.service"], mutates=True)
        if changed and state.active:
            self.runner.run(["systemctl", "restart", f"{FPRINTD_SERVICE}.service"], mutates=True)
        elif not state.active:
            self.runner.run(["systemctl", "start", f"{FPRINTD_SERVICE}.service"], mutates=True)

        reasons = []
        hint = pam_hint(profile.distribution_id)
        if self.runner.dry_run or self.host.service_state(FPRINTD_SERVICE).active:
            reasons.append(f"{FPRINTD_SERVICE} is running")
            outcome = Outcome.SUCCESS
        else:
            reasons.append(f"{FPRINTD_SERVICE} is not running")
            outcome = Outcome.WARNING
        if hint:
            reasons.append(hint)
        return CheckResult(outcome, tuple(reasons))
