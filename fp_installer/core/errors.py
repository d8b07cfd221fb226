"""Error taxonomy shared by the pipeline stages and the fallback manager."""

from __future__ import annotations


class InstallerError(Exception):
    """Base error carrying a human-readable remediation hint."""

    remediation: str = ""

    def __init__(self, message: str, remediation: str = ""):
        super().__init__(message)
        self.message = message
        if remediation:
            self.remediation = remediation


class DetectionError(InstallerError):
    remediation = "Install on a supported distribution with a known package manager"


class DependencyError(InstallerError):
    remediation = "Install the listed packages manually, then re-run"


class CompatibilityFailure(InstallerError):
    remediation = "Re-run with --force to continue despite the failed check"


class BuildError(InstallerError):
    remediation = "Check the build output and kernel headers, or re-run with --force"


class LoadError(InstallerError):
    remediation = "Check 'dmesg | grep fp_xiaomi', or re-run with --force and use a fallback strategy"


class StrategyActivationError(InstallerError):
    remediation = "Run 'fp-installer fallback list' and pick another strategy"


class UnknownStrategyError(StrategyActivationError):
    pass


class NoBackupError(InstallerError):
    remediation = "Activate a fallback strategy before restoring"


class AlreadyInstalledError(InstallerError):
    remediation = "Use --reinstall to rewrite the fallback configuration"


class LockHeldError(InstallerError):
    remediation = "Wait for the other fp-installer process to finish"


class StrategyActiveError(InstallerError):
    remediation = "Run 'fp-installer fallback restore' first"
