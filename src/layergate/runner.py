from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from layergate.collaborators.base import StageCollaborator
from layergate.errors import (
    CollaboratorFailureError,
    CollaboratorTimeoutError,
    SchemaViolationError,
)
from layergate.models import (
    Finding,
    Severity,
    Stage,
    StageRequest,
    StageVerdict,
    VerdictStatus,
)

logger = logging.getLogger(__name__)

RunnerEventHook = Callable[[dict[str, Any]], None]


class StageRunner:
    """Crosses into collaborator code for one stage invocation.

    Every outcome is either a validated ``StageVerdict`` or a ``StageRunnerError``
    subclass; nothing is retried here.
    """

    def __init__(
        self,
        collaborators: Mapping[str, StageCollaborator],
        *,
        stage_count: int,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.collaborators = dict(collaborators)
        self.stage_count = stage_count
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def invoke(
        self,
        stage: Stage,
        handoff_payload: Any,
        prior_findings: Sequence[Finding] = (),
    ) -> StageVerdict:
        collaborator = self.collaborators.get(stage.stage_id)
        if collaborator is None:
            raise CollaboratorFailureError(
                f"No collaborator registered for stage '{stage.stage_id}'.",
                stage_id=stage.stage_id,
                ordinal=stage.ordinal,
            )
        request = StageRequest(
            stage_id=stage.stage_id,
            ordinal=stage.ordinal,
            handoff_payload=handoff_payload,
            prior_findings=tuple(prior_findings),
        )
        self._emit(
            {
                "event": "stage_invoke",
                "stage_id": stage.stage_id,
                "ordinal": stage.ordinal,
                "timeout_seconds": stage.timeout_seconds,
                "prior_findings": len(request.prior_findings),
            }
        )
        try:
            raw = await asyncio.wait_for(
                collaborator.invoke(request), timeout=stage.timeout_seconds
            )
        except TimeoutError as exc:
            logger.warning(
                "Stage %s timed out after %.1fs", stage.stage_id, stage.timeout_seconds
            )
            raise CollaboratorTimeoutError(
                f"Stage '{stage.stage_id}' exceeded its {stage.timeout_seconds:.1f}s budget.",
                stage_id=stage.stage_id,
                ordinal=stage.ordinal,
            ) from exc
        except Exception as exc:
            raise CollaboratorFailureError(
                f"Stage '{stage.stage_id}' collaborator failed: {exc}",
                stage_id=stage.stage_id,
                ordinal=stage.ordinal,
            ) from exc
        return self.parse_verdict(stage, raw)

    def _violation(self, stage: Stage, message: str) -> SchemaViolationError:
        return SchemaViolationError(
            f"Stage '{stage.stage_id}' returned a malformed verdict: {message}",
            stage_id=stage.stage_id,
            ordinal=stage.ordinal,
        )

    def _parse_finding(self, stage: Stage, index: int, item: Any) -> Finding:
        if not isinstance(item, Mapping):
            raise self._violation(stage, f"findings[{index}] is not an object.")
        severity_raw = item.get("severity")
        try:
            severity = Severity(severity_raw)
        except ValueError as exc:
            raise self._violation(
                stage, f"findings[{index}].severity={severity_raw!r} is not a known severity."
            ) from exc
        description = item.get("description")
        if not isinstance(description, str):
            raise self._violation(stage, f"findings[{index}].description must be a string.")
        category = item.get("category")
        if category is not None and not isinstance(category, str):
            raise self._violation(stage, f"findings[{index}].category must be a string.")
        root_cause = item.get("root_cause_stage")
        if root_cause is not None:
            if isinstance(root_cause, bool) or not isinstance(root_cause, int):
                raise self._violation(
                    stage, f"findings[{index}].root_cause_stage must be an integer."
                )
            if not 1 <= root_cause <= self.stage_count:
                raise self._violation(
                    stage,
                    f"findings[{index}].root_cause_stage={root_cause} is outside "
                    f"1..{self.stage_count}.",
                )
        return Finding(
            severity=severity,
            description=description,
            observed_stage=stage.ordinal,
            category=category,
            root_cause_stage=root_cause,
        )

    def parse_verdict(self, stage: Stage, raw: Any) -> StageVerdict:
        if not isinstance(raw, Mapping):
            raise self._violation(stage, "verdict is not an object.")
        status_raw = raw.get("status")
        try:
            status = VerdictStatus(status_raw)
        except ValueError as exc:
            raise self._violation(stage, f"status={status_raw!r} is not passed/blocked.") from exc
        findings_raw = raw.get("findings", [])
        if not isinstance(findings_raw, list):
            raise self._violation(stage, "findings must be a list.")
        if "handoff" not in raw:
            raise self._violation(stage, "handoff is missing.")
        findings = tuple(
            self._parse_finding(stage, index, item) for index, item in enumerate(findings_raw)
        )
        return StageVerdict(
            stage_id=stage.stage_id,
            ordinal=stage.ordinal,
            status=status,
            findings=findings,
            handoff=raw["handoff"],
        )
