from layergate.collaborators.base import (
    CollaboratorError,
    CollaboratorEventHook,
    StageCollaborator,
)
from layergate.collaborators.command import CommandCollaborator
from layergate.collaborators.function import FunctionCollaborator

__all__ = [
    "CollaboratorError",
    "CollaboratorEventHook",
    "CommandCollaborator",
    "FunctionCollaborator",
    "StageCollaborator",
]
