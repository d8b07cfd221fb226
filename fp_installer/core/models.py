"""Core data models for fp-installer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

UNKNOWN = "unknown"


class Outcome(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"


class Verdict(Enum):
    PASS = "pass"
    PARTIAL = "partial"
    FAIL = "fail"


class Lifecycle(Enum):
    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    ACTIVE = "active"
    TESTED = "tested"
    RESTORED = "restored"


@dataclass(frozen=True)
class SystemProfile:
    distribution_id: str = UNKNOWN
    distribution_version: str = UNKNOWN
    package_manager_id: str = UNKNOWN
    init_system_id: str = UNKNOWN
    detected_device_ids: frozenset[str] = frozenset()
    kernel_release: str = UNKNOWN
    pretty_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["detected_device_ids"] = sorted(self.detected_device_ids)
        return data


@dataclass(frozen=True)
class PipelineOptions:
    force: bool = False
    skip_tests: bool = False
    debug: bool = False
    install_fallback: bool = True
    auto_configure: bool = True
    dry_run: bool = False


@dataclass(frozen=True)
class StageResult:
    stage_name: str
    outcome: Outcome
    duration_ms: int = 0
    message: str = ""
    remediation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "outcome": self.outcome.value,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "remediation": self.remediation,
        }


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a gate/installer/configurator call plus its reasons."""

    outcome: Outcome
    reasons: tuple[str, ...] = ()

    @property
    def message(self) -> str:
        return "; ".join(self.reasons)


@dataclass
class PipelineReport:
    success: bool
    stage_results: list[StageResult]
    options: PipelineOptions
    profile: Optional[SystemProfile] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def outcomes(self) -> dict[str, Outcome]:
        return {r.stage_name: r.outcome for r in self.stage_results}

    def warnings(self) -> list[StageResult]:
        return [r for r in self.stage_results if r.outcome == Outcome.WARNING]

    def failures(self) -> list[StageResult]:
        return [r for r in self.stage_results if r.outcome == Outcome.FAILURE]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": (
                self.finished_at.isoformat() if self.finished_at else None
            ),
            "options": asdict(self.options),
            "profile": self.profile.to_dict() if self.profile else None,
            "stages": [r.to_dict() for r in self.stage_results],
        }


@dataclass(frozen=True)
class ServiceState:
    active: bool
    enabled: bool


@dataclass(frozen=True)
class BackupSnapshot:
    timestamp: datetime
    loaded_modules: str
    service_status: dict[str, ServiceState] = field(default_factory=dict)
    rules_copy: Optional[str] = None

    def module_names(self) -> set[str]:
        """Module names from the captured ``lsmod`` text (header skipped)."""
        names = set()
        for line in self.loaded_modules.splitlines()[1:]:
            parts = line.split()
            if parts:
                names.add(parts[0])
        return names


@dataclass(frozen=True)
class FallbackConfig:
    enabled: bool = True
    default_strategy: str = "generic_library"
    auto_fallback: bool = True
    timeout: int = 30


@dataclass(frozen=True)
class FallbackState:
    lifecycle: Lifecycle = Lifecycle.UNINSTALLED
    active_strategy: Optional[str] = None
    last_verdict: Optional[Verdict] = None
    config: FallbackConfig = field(default_factory=FallbackConfig)

    @property
    def installed(self) -> bool:
        return self.lifecycle != Lifecycle.UNINSTALLED


@dataclass(frozen=True)
class OperationResult:
    """Result of a fallback or uninstall operation that did not raise."""

    outcome: Outcome
    message: str = ""
    verdict: Optional[Verdict] = None


@dataclass
class HostStatus:
    kernel_release: str
    distribution: str
    device_lines: list[str] = field(default_factory=list)
    driver_modules: list[str] = field(default_factory=list)
    services: dict[str, ServiceState] = field(default_factory=dict)
    fallback_installed: bool = False
    fallback_config: dict[str, str] = field(default_factory=dict)
    active_strategy: Optional[str] = None
    recorded_strategy: Optional[str] = None

    @property
    def device_detected(self) -> bool:
        return bool(self.device_lines)

    @property
    def kernel_module_loaded(self) -> bool:
        return bool(self.driver_modules)
