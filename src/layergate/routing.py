from __future__ import annotations

from collections.abc import Mapping, Sequence

from layergate.errors import (
    ConfigurationError,
    ReworkLimitExceeded,
    UnclassifiableFinding,
)
from layergate.models import Finding, RouteDecision, RouteMode, Stage

DEFAULT_REWORK_LIMIT = 3

# Finding category -> stage id where the defect has to be fixed.
DEFAULT_CLASSIFICATION: dict[str, str] = {
    "requirement_ambiguity": "requirements",
    "safety_gap": "requirements",
    "architecture_flaw": "architecture",
    "implementation_error": "implementation",
    "misra_violation": "implementation",
    "timing_violation": "implementation",
    "test_gap": "unit_test",
    "proof_gap": "formal_verification",
    "review_finding": "code_review",
}


class DefectRouter:
    """Attributes findings to a root-cause stage and picks the rework route."""

    def __init__(
        self,
        stages: Sequence[Stage],
        classification: Mapping[str, str] | None = None,
        *,
        rework_limit: int = DEFAULT_REWORK_LIMIT,
    ) -> None:
        if rework_limit < 0:
            raise ConfigurationError("rework_limit must be >= 0.")
        self.stage_count = len(stages)
        self.rework_limit = rework_limit
        ordinals = {stage.stage_id: stage.ordinal for stage in stages}
        table = DEFAULT_CLASSIFICATION if classification is None else classification
        self.classification: dict[str, int] = {}
        for category, stage_id in table.items():
            if stage_id not in ordinals:
                if classification is None:
                    # Reference table entries for stages this pipeline does not have.
                    continue
                raise ConfigurationError(
                    f"Classification for '{category}' targets unknown stage '{stage_id}'."
                )
            self.classification[category] = ordinals[stage_id]

    def root_cause(self, finding: Finding) -> int:
        if finding.root_cause_stage is not None:
            root = finding.root_cause_stage
            if not 1 <= root <= self.stage_count:
                raise UnclassifiableFinding(
                    f"Root cause stage {root} is outside the pipeline (1..{self.stage_count})."
                )
        elif finding.category and finding.category in self.classification:
            root = self.classification[finding.category]
        else:
            category = finding.category or "<none>"
            raise UnclassifiableFinding(
                f"No root cause hint and no classification for category '{category}'."
            )
        if root > finding.observed_stage:
            raise UnclassifiableFinding(
                f"Root cause stage {root} comes after observing stage {finding.observed_stage}."
            )
        return root

    def check_rework_budget(self, target: int, rework_cycles: Mapping[int, int]) -> int:
        cycle = int(rework_cycles.get(target, 0)) + 1
        if cycle > self.rework_limit:
            raise ReworkLimitExceeded(
                f"Stage {target} already reworked {cycle - 1} time(s) "
                f"(limit {self.rework_limit})."
            )
        return cycle

    def route(
        self,
        finding: Finding,
        rework_cycles: Mapping[int, int] | None = None,
    ) -> RouteDecision:
        cycles = rework_cycles or {}
        try:
            root = self.root_cause(finding)
        except UnclassifiableFinding as exc:
            return RouteDecision(
                mode=RouteMode.ESCALATE, target_stage=None, reason=exc.reason, detail=str(exc)
            )

        mode = RouteMode.REGRESS if root < finding.observed_stage else RouteMode.RESOLVE_IN_PLACE
        try:
            self.check_rework_budget(root, cycles)
        except ReworkLimitExceeded as exc:
            return RouteDecision(
                mode=RouteMode.ESCALATE, target_stage=root, reason=exc.reason, detail=str(exc)
            )
        return RouteDecision(mode=mode, target_stage=root)
