"""Device-activation rules — udev rules and module-loading configuration."""

from __future__ import annotations

import logging

from fp_installer.core.models import CheckResult, Outcome
from fp_installer.core.runner import CommandRunner
from fp_installer.core.settings import Settings
from fp_installer.devices import catalog

logger = logging.getLogger(__name__)

_MODPROBE_CONF = """\
# Xiaomi fingerprint driver configuration (managed by fp-installer)
# Prevent conflicting drivers from loading
blacklist fpc1020
blacklist fpc1155
"""


class RulesInstaller:
    """Installs udev rules and boot-time module loading. Re-applying is a no-op."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner

    def rules_content(self) -> str:
        """Bundled rules from the source tree, or rules generated from the catalog."""
        bundled = self.settings.bundled_rules
        if bundled.is_file():
            return bundled.read_text()
        return catalog.udev_rules()

    def apply(self) -> CheckResult:
        rules_changed = self.runner.write_file(self.settings.rules_path, self.rules_content())
        module_changed = self.runner.write_file(
            self.settings.modules_load_path, f"{self.settings.module_name}\n"
        )
        modprobe_changed = self.runner.write_file(
            self.settings.modprobe_conf_path, _MODPROBE_CONF
        )

        if rules_changed:
            self.reload()
        changed = [
            str(path) for path, flag in (
                (self.settings.rules_path, rules_changed),
                (self.settings.modules_load_path, module_changed),
                (self.settings.modprobe_conf_path, modprobe_changed),
            ) if flag
        ]
        if not changed:
            return CheckResult(Outcome.SUCCESS, ("Rules already up to date",))
        return CheckResult(Outcome.SUCCESS, (f"Updated {', '.join(changed)}",))

    def reload(self) -> None:
        result = self.runner.run(["udevadm", "control", "--reload-rules"], mutates=True)
        if result.success:
            self.runner.run(["udevadm", "trigger"], mutates=True)
        else:
            logger.warning("udev reload failed: %s", result.output)
