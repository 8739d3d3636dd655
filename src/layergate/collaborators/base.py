from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

from layergate.models import StageRequest

CollaboratorEventHook = Callable[[dict[str, Any]], None]


class CollaboratorError(RuntimeError):
    """Raised by a collaborator integration that cannot produce output."""

    def __init__(
        self,
        message: str,
        *,
        collaborator: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.collaborator = collaborator
        self.exit_code = exit_code


class StageCollaborator(ABC):
    """Opaque stage implementation: request in, raw verdict mapping out."""

    name: str = "collaborator"

    @abstractmethod
    async def invoke(self, request: StageRequest) -> Mapping[str, Any] | None:
        """Run the stage and return ``{"status", "findings", "handoff"}``."""
