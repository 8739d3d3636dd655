from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from layergate.collaborators.base import StageCollaborator
from layergate.errors import (
    ConfigurationError,
    GateFailure,
    HoldReason,
    StageRunnerError,
)
from layergate.gates import STATUS_CRITERION, GateEvaluator
from layergate.ledger import DefectLedger
from layergate.models import (
    Decision,
    DefectRecord,
    Finding,
    GateResult,
    RouteDecision,
    RouteMode,
    RunStatus,
    Severity,
    Stage,
    StageMetrics,
    StageVerdict,
)
from layergate.routing import DEFAULT_REWORK_LIMIT, DefectRouter
from layergate.runner import StageRunner

logger = logging.getLogger(__name__)

ControllerEventHook = Callable[[dict[str, Any]], None]

GATE_CRITERION_CATEGORY = "gate_criterion"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Transition:
    state: str
    stage: int | None
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state, "stage": self.stage, "detail": self.detail}


@dataclass(slots=True)
class PipelineRun:
    pipeline_id: str
    run_id: str
    ledger: DefectLedger
    status: RunStatus = RunStatus.IN_PROGRESS
    current_stage: int = 0
    verdicts: list[StageVerdict] = field(default_factory=list)
    rework_cycles: dict[int, int] = field(default_factory=dict)
    transitions: list[Transition] = field(default_factory=list)
    routes: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: str = field(default_factory=_utcnow_iso)

    def enter(self, stage: int, detail: str = "") -> None:
        self.status = RunStatus.IN_PROGRESS
        self.current_stage = stage
        self.transitions.append(Transition("running", stage, detail))

    def block(self, stage: int, detail: str = "") -> None:
        self.status = RunStatus.BLOCKED
        self.transitions.append(Transition("blocked", stage, detail))

    def complete(self, decision: Decision, detail: str = "") -> None:
        self.status = RunStatus.COMPLETED
        self.transitions.append(
            Transition("completed", self.current_stage, detail or decision.value)
        )

    def regress(self, target: int) -> int:
        if target > self.current_stage:
            raise ConfigurationError(
                f"Rework target {target} is ahead of current stage {self.current_stage}."
            )
        self.rework_cycles[target] = self.rework_cycles.get(target, 0) + 1
        return self.rework_cycles[target]


@dataclass(slots=True)
class PipelineOutcome:
    pipeline_id: str
    run_id: str
    decision: Decision
    reason: HoldReason | None
    blocking_issues: list[Finding]
    per_stage_metrics: dict[int, StageMetrics]
    defects: list[DefectRecord]
    transitions: list[Transition]
    routes: list[dict[str, Any]]
    errors: list[dict[str, Any]]
    rework_cycles: dict[int, int]
    final_handoff: Any = None
    started_at: str = ""
    ended_at: str = ""

    @property
    def released(self) -> bool:
        return self.decision is Decision.RELEASE

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "run_id": self.run_id,
            "decision": self.decision.value,
            "reason": self.reason.value if self.reason else None,
            "blocking_issues": [finding.to_dict() for finding in self.blocking_issues],
            "per_stage_metrics": {
                str(stage): metrics.to_dict() for stage, metrics in self.per_stage_metrics.items()
            },
            "defects": [record.to_dict() for record in self.defects],
            "transitions": [transition.to_dict() for transition in self.transitions],
            "routes": list(self.routes),
            "errors": list(self.errors),
            "rework_cycles": {str(stage): count for stage, count in self.rework_cycles.items()},
            "final_handoff": self.final_handoff,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


def validate_stages(stages: Sequence[Stage]) -> tuple[Stage, ...]:
    if not stages:
        raise ConfigurationError("Pipeline requires at least one stage.")
    seen: set[str] = set()
    for position, stage in enumerate(stages, start=1):
        if stage.ordinal != position:
            raise ConfigurationError(
                f"Stage '{stage.stage_id}' has ordinal {stage.ordinal}, expected {position}."
            )
        if stage.stage_id in seen:
            raise ConfigurationError(f"Duplicate stage id: {stage.stage_id}")
        seen.add(stage.stage_id)
        if stage.timeout_seconds <= 0:
            raise ConfigurationError(f"Stage '{stage.stage_id}' needs a positive timeout.")
        if position < len(stages) and not stage.criteria:
            raise ConfigurationError(
                f"Stage '{stage.stage_id}' has an empty gate; non-terminal stages need "
                "at least one criterion."
            )
    return tuple(stages)


class PipelineController:
    """Drives one component build through the configured stages.

    The controller holds configuration only. Each ``run`` call owns a fresh
    ``PipelineRun``, so independent runs may be awaited concurrently.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        collaborators: Mapping[str, StageCollaborator],
        *,
        rework_limit: int = DEFAULT_REWORK_LIMIT,
        classification: Mapping[str, str] | None = None,
        pipeline_id: str = "pipeline",
        event_hook: ControllerEventHook | None = None,
    ) -> None:
        self.stages = validate_stages(stages)
        missing = [stage.stage_id for stage in self.stages if stage.stage_id not in collaborators]
        if missing:
            raise ConfigurationError(
                "No collaborator registered for stage(s): " + ", ".join(missing)
            )
        self.pipeline_id = pipeline_id
        self.event_hook = event_hook
        self.gates = GateEvaluator()
        self.router = DefectRouter(self.stages, classification, rework_limit=rework_limit)
        self.runner = StageRunner(
            collaborators, stage_count=len(self.stages), event_hook=event_hook
        )

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            payload = dict(event)
            payload.setdefault("at", _utcnow_iso())
            self.event_hook(payload)

    def _stage(self, ordinal: int) -> Stage:
        return self.stages[ordinal - 1]

    def _record_route(
        self, run: PipelineRun, finding: Finding, decision: RouteDecision, *, blocking: bool
    ) -> DefectRecord:
        rework_cycle = 0
        if blocking and decision.mode is not RouteMode.ESCALATE and decision.target_stage:
            rework_cycle = run.rework_cycles.get(decision.target_stage, 0) + 1
        record = run.ledger.record(
            finding,
            decision,
            run_id=run.run_id,
            blocking=blocking,
            rework_cycle=rework_cycle,
        )
        entry = {
            "defect_id": record.defect_id,
            "stage": finding.observed_stage,
            **decision.to_dict(),
        }
        run.routes.append(entry)
        self._emit({"event": "defect_routed", "run_id": run.run_id, "blocking": blocking, **entry})
        return record

    @staticmethod
    def _criterion_findings(stage: Stage, result: GateResult, has_blocking: bool) -> list[Finding]:
        synthesized: list[Finding] = []
        for criterion in result.failed_criteria:
            if criterion == STATUS_CRITERION and has_blocking:
                continue
            synthesized.append(
                Finding(
                    severity=Severity.MAJOR,
                    description=f"Gate criterion unmet: {criterion.name}",
                    observed_stage=stage.ordinal,
                    category=GATE_CRITERION_CATEGORY,
                    root_cause_stage=stage.ordinal,
                )
            )
        return synthesized

    def _finish(
        self,
        run: PipelineRun,
        decision: Decision,
        *,
        reason: HoldReason | None = None,
        blocking: Sequence[Finding] = (),
        final_handoff: Any = None,
    ) -> PipelineOutcome:
        run.complete(decision, reason.value if reason else "")
        blocking_issues = list(blocking)
        for record in run.ledger.open_blocking(run.run_id):
            if record.finding not in blocking_issues:
                blocking_issues.append(record.finding)
        outcome = PipelineOutcome(
            pipeline_id=run.pipeline_id,
            run_id=run.run_id,
            decision=decision,
            reason=reason,
            blocking_issues=blocking_issues,
            per_stage_metrics=run.ledger.effectiveness_report(
                self.stage_count, run_id=run.run_id
            ),
            defects=run.ledger.records(run.run_id),
            transitions=list(run.transitions),
            routes=list(run.routes),
            errors=list(run.errors),
            rework_cycles=dict(run.rework_cycles),
            final_handoff=final_handoff,
            started_at=run.started_at,
            ended_at=_utcnow_iso(),
        )
        logger.info(
            "Pipeline %s run %s finished: %s%s",
            run.pipeline_id,
            run.run_id,
            decision.value,
            f" ({reason.value})" if reason else "",
        )
        self._emit(
            {
                "event": "run_completed",
                "run_id": run.run_id,
                "decision": decision.value,
                "reason": reason.value if reason else None,
            }
        )
        return outcome

    async def run(
        self,
        initial_payload: Any = None,
        *,
        pipeline_id: str | None = None,
        ledger: DefectLedger | None = None,
        run_id: str | None = None,
    ) -> PipelineOutcome:
        run = PipelineRun(
            pipeline_id=pipeline_id or self.pipeline_id,
            run_id=run_id or f"run-{uuid4().hex[:12]}",
            ledger=ledger if ledger is not None else DefectLedger(),
        )
        run.transitions.append(Transition("idle", None))
        self._emit({"event": "run_started", "run_id": run.run_id, "pipeline_id": run.pipeline_id})

        # Latest handoff each stage was entered with; replayed on rework.
        stage_inputs: dict[int, Any] = {}
        ordinal = 1
        payload = initial_payload
        prior: list[Finding] = []
        detail = ""

        while True:
            stage = self._stage(ordinal)
            stage_inputs[ordinal] = payload
            run.enter(ordinal, detail)
            self._emit(
                {"event": "stage_started", "run_id": run.run_id, "stage_id": stage.stage_id}
            )

            try:
                verdict = await self.runner.invoke(stage, payload, prior)
            except StageRunnerError as exc:
                logger.warning("Stage %s escalated: %s", stage.stage_id, exc)
                run.errors.append(
                    {
                        "kind": exc.reason.value,
                        "stage": exc.ordinal,
                        "stage_id": exc.stage_id,
                        "message": str(exc),
                    }
                )
                run.block(ordinal, exc.reason.value)
                return self._finish(run, Decision.HOLD, reason=exc.reason)

            run.verdicts.append(verdict)
            try:
                gate = self.gates.enforce(stage, verdict)
            except GateFailure as exc:
                gate = exc.result
                run.errors.append(
                    {
                        "kind": exc.reason.value,
                        "stage": ordinal,
                        "stage_id": stage.stage_id,
                        "message": str(exc),
                    }
                )
            self._emit({"event": "gate_evaluated", "run_id": run.run_id, **gate.to_dict()})

            if gate.passed:
                # Findings reported by this pass stay open; only earlier ones resolve here.
                resolved = run.ledger.resolve_for_stage(ordinal, run_id=run.run_id)
                for finding in verdict.findings:
                    self._record_route(
                        run, finding, self.router.route(finding, run.rework_cycles), blocking=False
                    )
                if resolved:
                    logger.debug(
                        "Stage %s re-passed; resolved defects %s",
                        stage.stage_id,
                        [record.defect_id for record in resolved],
                    )
                self._emit(
                    {
                        "event": "stage_completed",
                        "run_id": run.run_id,
                        "stage_id": stage.stage_id,
                        "resolved": [record.defect_id for record in resolved],
                    }
                )
                if ordinal == self.stage_count:
                    if run.ledger.open_blocking(run.run_id):
                        return self._finish(
                            run,
                            Decision.HOLD,
                            reason=HoldReason.UNRESOLVED_FINDINGS,
                            final_handoff=verdict.handoff,
                        )
                    return self._finish(run, Decision.RELEASE, final_handoff=verdict.handoff)
                ordinal += 1
                payload = verdict.handoff
                prior = []
                detail = ""
                continue

            run.block(ordinal, HoldReason.GATE_FAILURE.value)
            blocking = [finding for finding in verdict.findings if finding.severity.blocking]
            blocking.extend(self._criterion_findings(stage, gate, bool(blocking)))

            decisions: list[RouteDecision] = []
            for finding in verdict.findings:
                if finding.severity.blocking:
                    continue
                self._record_route(
                    run, finding, self.router.route(finding, run.rework_cycles), blocking=False
                )
            for finding in blocking:
                decision = self.router.route(finding, run.rework_cycles)
                self._record_route(run, finding, decision, blocking=True)
                decisions.append(decision)

            escalations = [item for item in decisions if item.mode is RouteMode.ESCALATE]
            if escalations:
                reason = escalations[0].reason or HoldReason.GATE_FAILURE
                logger.warning(
                    "Stage %s escalated: %s", stage.stage_id, escalations[0].detail or reason.value
                )
                return self._finish(run, Decision.HOLD, reason=reason, blocking=blocking)

            target = min(item.target_stage for item in decisions if item.target_stage)
            cycle = run.regress(target)
            direction = "regression" if target < ordinal else "rework_in_place"
            logger.info(
                "Stage %s blocked; %s to stage %s (cycle %s)",
                stage.stage_id,
                direction,
                self._stage(target).stage_id,
                cycle,
            )
            self._emit(
                {
                    "event": direction,
                    "run_id": run.run_id,
                    "from_stage": ordinal,
                    "to_stage": target,
                    "cycle": cycle,
                }
            )
            ordinal = target
            payload = stage_inputs[target]
            prior = blocking
            detail = f"{direction} from stage {stage.ordinal} (cycle {cycle})"
