from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping
from typing import Any

from layergate.collaborators.base import StageCollaborator
from layergate.models import StageRequest

StageFunction = Callable[[StageRequest], Any]


class FunctionCollaborator(StageCollaborator):
    """Adapts a plain or ``async`` Python callable to the collaborator contract.

    Plain callables run in a worker thread so the stage timeout still applies while
    they block; the thread itself cannot be interrupted and finishes in the background.
    """

    def __init__(self, func: StageFunction, *, name: str | None = None) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    async def invoke(self, request: StageRequest) -> Mapping[str, Any] | None:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(request)
        result = await asyncio.to_thread(self.func, request)
        if inspect.isawaitable(result):
            result = await result
        return result
