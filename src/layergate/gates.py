from __future__ import annotations

from typing import Any

from layergate.errors import GateFailure
from layergate.models import (
    GateCriterion,
    GateResult,
    Severity,
    Stage,
    StageVerdict,
    VerdictStatus,
)

STATUS_CRITERION = GateCriterion(
    name="stage_status",
    field_path="status",
    operator="eq",
    value=VerdictStatus.PASSED.value,
    description="Stage collaborator reported passed.",
)

_MISSING = object()


def resolve_field(tree: Any, path: str) -> Any:
    """Walk a dotted path through mappings and sequences.

    Returns the module-level ``_MISSING`` sentinel when any segment is absent so
    callers can tell an absent field from an explicit ``None``.
    """
    current = tree
    for segment in path.split("."):
        if not segment:
            return _MISSING
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
            continue
        if isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if index >= len(current) or index < -len(current):
                return _MISSING
            current = current[index]
            continue
        return _MISSING
    return current


def _check(criterion: GateCriterion, actual: Any) -> bool:
    operator = criterion.operator
    expected = criterion.value
    if operator == "is_true":
        return actual is True
    if operator == "is_false":
        return actual is False
    if operator == "empty":
        return isinstance(actual, (list, tuple, dict, str)) and len(actual) == 0
    if operator == "not_empty":
        return isinstance(actual, (list, tuple, dict, str)) and len(actual) > 0
    if operator == "eq":
        return actual == expected
    if operator == "ne":
        return actual is not None and actual != expected
    # Ordering operators never coerce; bools are not treated as numbers.
    if isinstance(actual, bool) or isinstance(expected, bool):
        return False
    try:
        if operator == "lt":
            return actual < expected
        if operator == "le":
            return actual <= expected
        if operator == "gt":
            return actual > expected
        if operator == "ge":
            return actual >= expected
    except TypeError:
        return False
    return False


class GateEvaluator:
    def criterion_met(self, criterion: GateCriterion, verdict: StageVerdict) -> bool:
        actual = resolve_field(verdict.view(), criterion.field_path)
        if actual is _MISSING:
            return False
        return _check(criterion, actual)

    def evaluate(self, stage: Stage, verdict: StageVerdict) -> GateResult:
        failed = [
            criterion for criterion in stage.criteria if not self.criterion_met(criterion, verdict)
        ]
        if not self.criterion_met(STATUS_CRITERION, verdict):
            failed.append(STATUS_CRITERION)
        critical = tuple(
            finding for finding in verdict.findings if finding.severity is Severity.CRITICAL
        )
        return GateResult(
            stage_id=stage.stage_id,
            passed=not failed and not critical,
            failed_criteria=tuple(failed),
            critical_findings=critical,
        )

    def enforce(self, stage: Stage, verdict: StageVerdict) -> GateResult:
        result = self.evaluate(stage, verdict)
        if result.passed:
            return result
        parts: list[str] = []
        if result.failed_criteria:
            parts.append(
                "unmet criteria: " + ", ".join(item.name for item in result.failed_criteria)
            )
        if result.critical_findings:
            parts.append(f"{len(result.critical_findings)} critical finding(s)")
        raise GateFailure(
            f"Gate for stage '{stage.stage_id}' blocked ({'; '.join(parts)}).",
            result=result,
        )
