from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from layergate.errors import HoldReason


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    OBSERVATION = "observation"

    @property
    def blocking(self) -> bool:
        return self in {Severity.CRITICAL, Severity.MAJOR}


class VerdictStatus(str, Enum):
    PASSED = "passed"
    BLOCKED = "blocked"


class RouteMode(str, Enum):
    REGRESS = "regress"
    RESOLVE_IN_PLACE = "resolve_in_place"
    ESCALATE = "escalate"


class DefectStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class Decision(str, Enum):
    RELEASE = "release"
    HOLD = "hold"


CRITERION_OPERATORS = frozenset(
    {"is_true", "is_false", "eq", "ne", "lt", "le", "gt", "ge", "empty", "not_empty"}
)


@dataclass(frozen=True, slots=True)
class GateCriterion:
    name: str
    field_path: str
    operator: str = "is_true"
    value: Any = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "field": self.field_path,
            "operator": self.operator,
        }
        if self.value is not None:
            payload["value"] = self.value
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True, slots=True)
class Stage:
    ordinal: int
    stage_id: str
    criteria: tuple[GateCriterion, ...] = ()
    timeout_seconds: float = 600.0
    description: str = ""


@dataclass(frozen=True, slots=True)
class Finding:
    severity: Severity
    description: str
    observed_stage: int
    category: str | None = None
    root_cause_stage: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "description": self.description,
            "observed_stage": self.observed_stage,
            "category": self.category,
            "root_cause_stage": self.root_cause_stage,
        }


@dataclass(frozen=True, slots=True)
class StageVerdict:
    stage_id: str
    ordinal: int
    status: VerdictStatus
    findings: tuple[Finding, ...] = ()
    handoff: Any = None

    def view(self) -> dict[str, Any]:
        """Field tree that gate criteria resolve their paths against."""
        return {
            "status": self.status.value,
            "findings": [finding.to_dict() for finding in self.findings],
            "handoff": self.handoff,
        }


@dataclass(frozen=True, slots=True)
class GateResult:
    stage_id: str
    passed: bool
    failed_criteria: tuple[GateCriterion, ...] = ()
    critical_findings: tuple[Finding, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "passed": self.passed,
            "failed_criteria": [criterion.to_dict() for criterion in self.failed_criteria],
            "critical_findings": [finding.to_dict() for finding in self.critical_findings],
        }


@dataclass(frozen=True, slots=True)
class RouteDecision:
    mode: RouteMode
    target_stage: int | None
    reason: HoldReason | None = None
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "target_stage": self.target_stage,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


@dataclass(slots=True)
class DefectRecord:
    defect_id: int
    run_id: str
    finding: Finding
    origin_stage: int
    root_cause_stage: int | None
    mode: RouteMode
    target_stage: int | None
    blocking: bool
    rework_cycle: int = 0
    status: DefectStatus = DefectStatus.OPEN
    resolved_at_stage: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.defect_id,
            "run_id": self.run_id,
            "finding": self.finding.to_dict(),
            "origin_stage": self.origin_stage,
            "root_cause_stage": self.root_cause_stage,
            "mode": self.mode.value,
            "target_stage": self.target_stage,
            "blocking": self.blocking,
            "rework_cycle": self.rework_cycle,
            "status": self.status.value,
            "resolved_at_stage": self.resolved_at_stage,
        }


@dataclass(slots=True)
class StageMetrics:
    stage: int
    found: int = 0
    injected: int = 0
    escaped: int = 0
    resolved: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "found": self.found,
            "injected": self.injected,
            "escaped": self.escaped,
            "resolved": self.resolved,
        }


@dataclass(frozen=True, slots=True)
class StageRequest:
    stage_id: str
    ordinal: int
    handoff_payload: Any
    prior_findings: tuple[Finding, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "ordinal": self.ordinal,
            "handoff_payload": self.handoff_payload,
            "prior_findings": [finding.to_dict() for finding in self.prior_findings],
        }
