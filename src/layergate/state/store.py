from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from layergate.controller import PipelineOutcome
from layergate.errors import StateStoreError


class RunStore:
    """Local JSON archive of finished pipeline runs and cumulative metrics."""

    NAMESPACES = {"runs", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / ".layergate" / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.events_dir = self.root / ".layergate" / "runs"
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in RunStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        os.replace(temp_path, path)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw(namespace)
        if raw is None:
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 1,
                "updated_at": self._utcnow_iso(),
                "data": default_value,
            }
        if not isinstance(raw, dict) or not {"schema_version", "revision", "data"} <= raw.keys():
            raise StateStoreError(f"State file for namespace '{namespace}' is not an envelope.")
        return {
            "schema_version": int(raw["schema_version"]),
            "revision": int(raw["revision"]),
            "updated_at": raw.get("updated_at") or self._utcnow_iso(),
            "data": raw["data"],
        }

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._lock():
            current = self.get_envelope(namespace)
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def get_runs(self) -> dict[str, Any]:
        runs = self.get_json("runs", default={})
        return runs if isinstance(runs, dict) else {}

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        run = self.get_runs().get(run_id)
        return run if isinstance(run, dict) else None

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def write_events(self, run_id: str, events: list[dict[str, Any]]) -> Path:
        self.events_dir.mkdir(parents=True, exist_ok=True)
        path = self.events_dir / f"{run_id}.jsonl"
        path.write_text(
            "".join(json.dumps(event, ensure_ascii=False) + "\n" for event in events),
            encoding="utf-8",
        )
        return path

    def archive_outcome(
        self,
        outcome: PipelineOutcome,
        events: list[dict[str, Any]] | None = None,
    ) -> None:
        payload = outcome.to_dict()
        if events is not None:
            payload["events_file"] = str(self.write_events(outcome.run_id, events))

        def _runs_updater(current: Any) -> dict[str, Any]:
            runs = current if isinstance(current, dict) else {}
            runs[outcome.run_id] = payload
            return runs

        def _metrics_updater(current: Any) -> dict[str, Any]:
            metrics = current if isinstance(current, dict) else {}
            decisions = metrics.get("decisions", {})
            if not isinstance(decisions, dict):
                decisions = {}
            decisions[outcome.decision.value] = int(decisions.get(outcome.decision.value, 0)) + 1
            metrics["decisions"] = decisions
            per_stage = metrics.get("per_stage", {})
            if not isinstance(per_stage, dict):
                per_stage = {}
            for stage, stage_metrics in payload["per_stage_metrics"].items():
                totals = per_stage.get(stage, {})
                if not isinstance(totals, dict):
                    totals = {}
                for key, value in stage_metrics.items():
                    totals[key] = int(totals.get(key, 0)) + int(value)
                per_stage[stage] = totals
            metrics["per_stage"] = per_stage
            metrics["last_run_id"] = outcome.run_id
            return metrics

        self.update_json("runs", _runs_updater, default={})
        self.update_json("metrics", _metrics_updater, default={})
