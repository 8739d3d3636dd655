from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from layergate.models import GateResult


class HoldReason(str, Enum):
    GATE_FAILURE = "GateFailure"
    COLLABORATOR_TIMEOUT = "CollaboratorTimeout"
    SCHEMA_VIOLATION = "SchemaViolation"
    COLLABORATOR_FAILURE = "CollaboratorFailure"
    REWORK_LIMIT_EXCEEDED = "ReworkLimitExceeded"
    UNCLASSIFIABLE_FINDING = "UnclassifiableFinding"
    UNRESOLVED_FINDINGS = "UnresolvedFindings"


class LayergateError(RuntimeError):
    """Base class for every error raised by layergate."""

    reason: HoldReason | None = None


class ConfigurationError(LayergateError):
    """Raised when a pipeline configuration is invalid."""


class GateFailure(LayergateError):
    """Raised when a stage verdict does not satisfy its gate."""

    reason = HoldReason.GATE_FAILURE

    def __init__(self, message: str, *, result: GateResult) -> None:
        super().__init__(message)
        self.result = result


class StageRunnerError(LayergateError):
    """Raised when a stage collaborator cannot produce a usable verdict."""

    reason = HoldReason.COLLABORATOR_FAILURE

    def __init__(self, message: str, *, stage_id: str, ordinal: int) -> None:
        super().__init__(message)
        self.stage_id = stage_id
        self.ordinal = ordinal


class CollaboratorTimeoutError(StageRunnerError):
    """Raised when a collaborator exceeds the stage timeout budget."""

    reason = HoldReason.COLLABORATOR_TIMEOUT


class SchemaViolationError(StageRunnerError):
    """Raised when a collaborator returns a malformed verdict."""

    reason = HoldReason.SCHEMA_VIOLATION


class CollaboratorFailureError(StageRunnerError):
    """Raised when a collaborator fails before returning a verdict."""


class ReworkLimitExceeded(LayergateError):
    reason = HoldReason.REWORK_LIMIT_EXCEEDED


class UnclassifiableFinding(LayergateError):
    reason = HoldReason.UNCLASSIFIABLE_FINDING


class LedgerError(LayergateError):
    """Raised on an invalid defect ledger operation."""


class StateStoreError(LayergateError):
    """Raised when run archive operations fail."""
