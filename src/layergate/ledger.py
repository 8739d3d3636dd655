from __future__ import annotations

import itertools
import threading

from layergate.errors import LedgerError
from layergate.models import (
    DefectRecord,
    DefectStatus,
    Finding,
    RouteDecision,
    RouteMode,
    StageMetrics,
)


class DefectLedger:
    """Append-only defect log.

    Records are never removed; the only mutation is the single ``open -> resolved``
    status transition. Id allocation and appends are serialized so one ledger may be
    shared by concurrently running pipelines for reporting.
    """

    def __init__(self) -> None:
        self._records: list[DefectRecord] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def records(self, run_id: str | None = None) -> list[DefectRecord]:
        with self._lock:
            snapshot = list(self._records)
        if run_id is None:
            return snapshot
        return [record for record in snapshot if record.run_id == run_id]

    def get(self, defect_id: int) -> DefectRecord:
        with self._lock:
            for record in self._records:
                if record.defect_id == defect_id:
                    return record
        raise LedgerError(f"Unknown defect id: {defect_id}")

    def record(
        self,
        finding: Finding,
        decision: RouteDecision,
        *,
        run_id: str = "",
        blocking: bool | None = None,
        rework_cycle: int = 0,
    ) -> DefectRecord:
        with self._lock:
            record = DefectRecord(
                defect_id=next(self._ids),
                run_id=run_id,
                finding=finding,
                origin_stage=finding.observed_stage,
                root_cause_stage=decision.target_stage,
                mode=decision.mode,
                target_stage=decision.target_stage,
                blocking=finding.severity.blocking if blocking is None else blocking,
                rework_cycle=rework_cycle,
            )
            self._records.append(record)
        return record

    def mark_resolved(self, defect_id: int, *, stage: int | None = None) -> DefectRecord:
        with self._lock:
            for record in self._records:
                if record.defect_id != defect_id:
                    continue
                if record.status is DefectStatus.RESOLVED:
                    raise LedgerError(f"Defect {defect_id} is already resolved.")
                record.status = DefectStatus.RESOLVED
                record.resolved_at_stage = stage if stage is not None else record.target_stage
                return record
        raise LedgerError(f"Unknown defect id: {defect_id}")

    def resolve_for_stage(self, stage: int, *, run_id: str = "") -> list[DefectRecord]:
        """Resolve open rework defects whose fix target just re-passed its gate."""
        pending = [
            record.defect_id
            for record in self.records(run_id)
            if record.status is DefectStatus.OPEN
            and record.finding.severity.blocking
            and record.target_stage == stage
            and record.mode in {RouteMode.REGRESS, RouteMode.RESOLVE_IN_PLACE}
        ]
        return [self.mark_resolved(defect_id, stage=stage) for defect_id in pending]

    def open_blocking(self, run_id: str | None = None) -> list[DefectRecord]:
        return [
            record
            for record in self.records(run_id)
            if record.status is DefectStatus.OPEN and record.finding.severity.blocking
        ]

    def effectiveness_report(
        self,
        stage_count: int,
        *,
        run_id: str | None = None,
    ) -> dict[int, StageMetrics]:
        report = {ordinal: StageMetrics(stage=ordinal) for ordinal in range(1, stage_count + 1)}
        for record in self.records(run_id):
            origin = report.get(record.origin_stage)
            if origin is not None:
                origin.found += 1
            root = record.root_cause_stage
            if root is None or root not in report:
                continue
            report[root].injected += 1
            if root < record.origin_stage:
                report[root].escaped += 1
            if record.status is DefectStatus.RESOLVED:
                report[root].resolved += 1
        return report
