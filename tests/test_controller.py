import asyncio
import copy
from collections.abc import Mapping
from typing import Any

import pytest

from layergate.collaborators import FunctionCollaborator, StageCollaborator
from layergate.config import LayergateConfig
from layergate.controller import PipelineController
from layergate.errors import ConfigurationError, HoldReason
from layergate.ledger import DefectLedger
from layergate.models import Decision, DefectStatus, GateCriterion, Stage, StageRequest

CLEAN_HANDOFF = {
    "requirements_traced": True,
    "interfaces_defined": True,
    "build_succeeded": True,
    "mandatory_violations": 0,
    "coverage_percent": 95,
    "unproven_obligations": 0,
    "deadline_misses": 0,
    "open_review_items": 0,
}


def _passed(**overrides: Any) -> dict[str, Any]:
    handoff = dict(CLEAN_HANDOFF)
    handoff.update(overrides)
    return {"status": "passed", "findings": [], "handoff": handoff}


class ScriptedCollaborator(StageCollaborator):
    """Replays a fixed list of responses; the last one repeats once exhausted."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses = list(responses or [_passed()])
        self.requests: list[StageRequest] = []

    async def invoke(self, request: StageRequest) -> Mapping[str, Any] | None:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, float):
            await asyncio.sleep(response)
            return _passed()
        return copy.deepcopy(response)


def _reference_stages(**timeouts: float) -> tuple[Stage, ...]:
    config = LayergateConfig.default()
    for stage in config.stages:
        if stage.id in timeouts:
            stage.timeout_seconds = timeouts[stage.id]
    return config.build_stages()


def _build(
    scripts: dict[str, list[Any]] | None = None,
    *,
    rework_limit: int = 3,
    timeouts: dict[str, float] | None = None,
    events: list[dict[str, Any]] | None = None,
    replacements: dict[str, StageCollaborator] | None = None,
) -> tuple[PipelineController, dict[str, StageCollaborator]]:
    stages = _reference_stages(**(timeouts or {}))
    collaborators: dict[str, StageCollaborator] = {
        stage.stage_id: ScriptedCollaborator((scripts or {}).get(stage.stage_id))
        for stage in stages
    }
    collaborators.update(replacements or {})
    controller = PipelineController(
        stages,
        collaborators,
        rework_limit=rework_limit,
        pipeline_id="test-pipeline",
        event_hook=events.append if events is not None else None,
    )
    return controller, collaborators


def _running_sequence(outcome: Any) -> list[int]:
    return [item.stage for item in outcome.transitions if item.state == "running"]


def _critical_from_static_analysis() -> dict[str, Any]:
    return {
        "status": "blocked",
        "findings": [
            {
                "severity": "critical",
                "description": "Interface contract violated by module layout",
                "root_cause_stage": 2,
            }
        ],
        "handoff": dict(CLEAN_HANDOFF),
    }


def test_all_stages_pass_releases_with_zero_defects() -> None:
    controller, collaborators = _build()

    outcome = asyncio.run(controller.run({"component": "brake-ecu"}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.reason is None
    assert outcome.blocking_issues == []
    assert _running_sequence(outcome) == list(range(1, 10))
    assert len(outcome.per_stage_metrics) == 9
    assert all(
        not any(metrics.to_dict().values()) for metrics in outcome.per_stage_metrics.values()
    )
    assert outcome.transitions[0].state == "idle"
    assert outcome.transitions[-1].state == "completed"
    assert collaborators["requirements"].requests[0].handoff_payload == {
        "component": "brake-ecu"
    }


def test_critical_finding_regresses_to_root_cause_stage_then_releases() -> None:
    controller, collaborators = _build(
        {"static_analysis": [_critical_from_static_analysis(), _passed()]}
    )

    outcome = asyncio.run(controller.run({"component": "brake-ecu"}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.rework_cycles == {2: 1}
    states = [(item.state, item.stage) for item in outcome.transitions]
    blocked_at = states.index(("blocked", 4))
    assert states[blocked_at + 1] == ("running", 2)
    assert _running_sequence(outcome) == [1, 2, 3, 4, 2, 3, 4, 5, 6, 7, 8, 9]

    rework_request = collaborators["architecture"].requests[1]
    first_request = collaborators["architecture"].requests[0]
    assert rework_request.handoff_payload == first_request.handoff_payload
    assert [finding.root_cause_stage for finding in rework_request.prior_findings] == [2]

    [defect] = outcome.defects
    assert defect.status is DefectStatus.RESOLVED
    assert defect.resolved_at_stage == 2
    assert defect.rework_cycle == 1
    assert outcome.per_stage_metrics[4].found == 1
    assert outcome.per_stage_metrics[2].injected == 1
    assert outcome.per_stage_metrics[2].escaped == 1


def test_rework_limit_exhaustion_holds() -> None:
    controller, collaborators = _build(
        {"static_analysis": [_critical_from_static_analysis()]}, rework_limit=3
    )

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.REWORK_LIMIT_EXCEEDED
    assert outcome.rework_cycles == {2: 3}
    assert len(collaborators["static_analysis"].requests) == 4
    assert outcome.blocking_issues
    assert outcome.routes[-1]["mode"] == "escalate"
    assert outcome.routes[-1]["reason"] == "ReworkLimitExceeded"


def test_regression_target_refailing_in_place_exhausts_rework_limit() -> None:
    architecture_blocked = {
        "status": "blocked",
        "findings": [
            {
                "severity": "critical",
                "description": "Interface contract still inconsistent",
                "root_cause_stage": 2,
            }
        ],
        "handoff": dict(CLEAN_HANDOFF),
    }
    controller, collaborators = _build(
        {
            "architecture": [_passed(), architecture_blocked],
            "static_analysis": [_critical_from_static_analysis(), _passed()],
        },
        rework_limit=3,
    )

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.REWORK_LIMIT_EXCEEDED
    assert outcome.rework_cycles == {2: 3}
    assert _running_sequence(outcome) == [1, 2, 3, 4, 2, 2, 2]
    assert len(collaborators["architecture"].requests) == 4
    assert [route["mode"] for route in outcome.routes] == [
        "regress",
        "resolve_in_place",
        "resolve_in_place",
        "escalate",
    ]
    assert outcome.routes[-1]["reason"] == "ReworkLimitExceeded"


def test_rework_replays_latest_handoff_of_target_stage() -> None:
    revisions = iter(range(1, 100))

    def _architecture(request: StageRequest) -> dict[str, Any]:
        return _passed(revision=next(revisions))

    unit_test_blocked = {
        "status": "blocked",
        "findings": [
            {"severity": "critical", "description": "Unsafe cast", "root_cause_stage": 3}
        ],
        "handoff": dict(CLEAN_HANDOFF),
    }
    controller, collaborators = _build(
        {
            "static_analysis": [_critical_from_static_analysis(), _passed()],
            "unit_test": [unit_test_blocked, _passed()],
        },
        replacements={"architecture": FunctionCollaborator(_architecture)},
    )

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.rework_cycles == {2: 1, 3: 1}
    assert _running_sequence(outcome) == [1, 2, 3, 4, 2, 3, 4, 5, 3, 4, 5, 6, 7, 8, 9]
    revisions_seen = [
        request.handoff_payload["revision"]
        for request in collaborators["implementation"].requests
    ]
    assert revisions_seen == [1, 2, 2]


def test_major_finding_from_passed_verdict_resolves_when_root_stage_repasses() -> None:
    passed_with_major = _passed()
    passed_with_major["findings"] = [
        {"severity": "major", "description": "Untraced requirement", "root_cause_stage": 1}
    ]
    static_analysis_blocked = {
        "status": "blocked",
        "findings": [
            {"severity": "critical", "description": "Missing safety goal", "root_cause_stage": 1}
        ],
        "handoff": dict(CLEAN_HANDOFF),
    }
    controller, _ = _build(
        {
            "architecture": [passed_with_major, _passed()],
            "static_analysis": [static_analysis_blocked, _passed()],
        }
    )

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.blocking_issues == []
    assert [(defect.finding.description, defect.blocking) for defect in outcome.defects] == [
        ("Untraced requirement", False),
        ("Missing safety goal", True),
    ]
    assert all(defect.status is DefectStatus.RESOLVED for defect in outcome.defects)
    assert all(defect.resolved_at_stage == 1 for defect in outcome.defects)


def test_stage_timeout_holds_without_regression() -> None:
    controller, collaborators = _build(
        {"formal_verification": [5.0]}, timeouts={"formal_verification": 0.05}
    )

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.COLLABORATOR_TIMEOUT
    assert outcome.rework_cycles == {}
    assert _running_sequence(outcome) == [1, 2, 3, 4, 5, 6]
    assert outcome.errors[-1]["kind"] == "CollaboratorTimeout"
    assert outcome.errors[-1]["stage"] == 6
    assert collaborators["timing_analysis"].requests == []


def test_failed_criterion_reworks_stage_in_place() -> None:
    controller, collaborators = _build(
        {"unit_test": [_passed(coverage_percent=50), _passed()]}
    )

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.rework_cycles == {5: 1}
    assert _running_sequence(outcome) == [1, 2, 3, 4, 5, 5, 6, 7, 8, 9]
    [defect] = outcome.defects
    assert defect.finding.category == "gate_criterion"
    assert defect.mode.value == "resolve_in_place"
    assert defect.status is DefectStatus.RESOLVED
    assert len(collaborators["unit_test"].requests[1].prior_findings) == 1


def test_category_classification_routes_to_mapped_stage() -> None:
    blocked = {
        "status": "blocked",
        "findings": [
            {
                "severity": "major",
                "description": "Flawed partitioning",
                "category": "architecture_flaw",
            }
        ],
        "handoff": dict(CLEAN_HANDOFF),
    }
    controller, _ = _build({"unit_test": [blocked, _passed()]})

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.rework_cycles == {2: 1}
    assert outcome.defects[0].root_cause_stage == 2


def test_unclassifiable_finding_escalates() -> None:
    blocked = {
        "status": "blocked",
        "findings": [{"severity": "major", "description": "???", "category": "cosmic_ray"}],
        "handoff": dict(CLEAN_HANDOFF),
    }
    controller, _ = _build({"code_review": [blocked]})

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.UNCLASSIFIABLE_FINDING
    assert outcome.rework_cycles == {}
    assert outcome.blocking_issues[0].description == "???"


def test_schema_violation_holds() -> None:
    controller, _ = _build({"implementation": [{"status": "maybe", "handoff": {}}]})

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.SCHEMA_VIOLATION
    assert outcome.errors[-1]["stage_id"] == "implementation"


def test_collaborator_exception_holds() -> None:
    controller, _ = _build({"requirements": [RuntimeError("agent crashed")]})

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.COLLABORATOR_FAILURE
    assert "agent crashed" in outcome.errors[-1]["message"]


def test_major_finding_left_open_blocks_release() -> None:
    passed_with_major = _passed()
    passed_with_major["findings"] = [
        {"severity": "major", "description": "Unjustified deviation", "root_cause_stage": 3}
    ]
    controller, _ = _build({"implementation": [passed_with_major]})

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.HOLD
    assert outcome.reason is HoldReason.UNRESOLVED_FINDINGS
    assert [finding.description for finding in outcome.blocking_issues] == [
        "Unjustified deviation"
    ]


def test_minor_findings_do_not_block_release() -> None:
    passed_with_minor = _passed()
    passed_with_minor["findings"] = [
        {"severity": "minor", "description": "Naming", "category": "unknown_category"},
        {"severity": "observation", "description": "Consider refactor", "root_cause_stage": 8},
    ]
    controller, _ = _build({"code_review": [passed_with_minor]})

    outcome = asyncio.run(controller.run({}))

    assert outcome.decision is Decision.RELEASE
    assert outcome.per_stage_metrics[8].found == 2
    assert outcome.per_stage_metrics[8].injected == 1


def test_stage_visits_only_move_forward_by_one_or_backward() -> None:
    controller, _ = _build(
        {
            "static_analysis": [_critical_from_static_analysis(), _passed()],
            "unit_test": [_passed(coverage_percent=10), _passed()],
            "code_review": [
                {
                    "status": "blocked",
                    "findings": [
                        {"severity": "critical", "description": "Race", "root_cause_stage": 3}
                    ],
                    "handoff": dict(CLEAN_HANDOFF),
                },
                _passed(),
            ],
        }
    )

    outcome = asyncio.run(controller.run({}))
    sequence = _running_sequence(outcome)

    assert outcome.decision is Decision.RELEASE
    for previous, current in zip(sequence, sequence[1:]):
        assert current == previous + 1 or current <= previous
    backward = sum(1 for previous, current in zip(sequence, sequence[1:]) if current < previous)
    assert backward == 2
    assert all(count <= 3 for count in outcome.rework_cycles.values())


def test_replaying_verdicts_is_deterministic() -> None:
    scripts = {
        "static_analysis": [_critical_from_static_analysis(), _passed()],
        "unit_test": [_passed(coverage_percent=10), _passed()],
    }
    first_controller, _ = _build(scripts)
    second_controller, _ = _build(scripts)

    first = asyncio.run(first_controller.run({"build": 7}))
    second = asyncio.run(second_controller.run({"build": 7}))

    assert first.decision is second.decision
    assert first.to_dict()["per_stage_metrics"] == second.to_dict()["per_stage_metrics"]
    assert _running_sequence(first) == _running_sequence(second)


def test_independent_runs_execute_concurrently() -> None:
    def _stage(request: StageRequest) -> dict[str, Any]:
        handoff = dict(CLEAN_HANDOFF)
        handoff["trail"] = [*request.handoff_payload.get("trail", []), request.stage_id]
        return {"status": "passed", "findings": [], "handoff": handoff}

    stages = _reference_stages()
    controller = PipelineController(
        stages, {stage.stage_id: FunctionCollaborator(_stage) for stage in stages}
    )
    shared = DefectLedger()

    async def _run_both() -> list[Any]:
        return await asyncio.gather(
            controller.run({"trail": []}, pipeline_id="a", ledger=shared),
            controller.run({"trail": []}, pipeline_id="b", ledger=shared),
        )

    first, second = asyncio.run(_run_both())

    assert first.released and second.released
    assert first.run_id != second.run_id
    assert first.final_handoff["trail"] == [stage.stage_id for stage in stages]
    assert second.final_handoff["trail"] == first.final_handoff["trail"]


def test_controller_emits_events() -> None:
    events: list[dict[str, Any]] = []
    controller, _ = _build(
        {"static_analysis": [_critical_from_static_analysis(), _passed()]}, events=events
    )

    asyncio.run(controller.run({}))

    names = [event["event"] for event in events]
    assert names[0] == "run_started"
    assert "regression" in names
    assert "defect_routed" in names
    assert names[-1] == "run_completed"


def test_non_terminal_stage_without_criteria_is_rejected() -> None:
    stages = [
        Stage(ordinal=1, stage_id="first"),
        Stage(ordinal=2, stage_id="last"),
    ]

    with pytest.raises(ConfigurationError, match="empty gate"):
        PipelineController(
            stages, {"first": ScriptedCollaborator(), "last": ScriptedCollaborator()}
        )


def test_missing_collaborator_is_rejected() -> None:
    stages = [
        Stage(
            ordinal=1,
            stage_id="only",
            criteria=(GateCriterion(name="ok", field_path="handoff.ok"),),
        )
    ]

    with pytest.raises(ConfigurationError, match="No collaborator"):
        PipelineController(stages, {})
