"""
Stage runner registry.

A stage runner implements the business logic of one stage (scrape, analyze,
generate, list). It receives a `StageRunContext` and returns a JSON-friendly
result or raises. Runners may be coroutine functions or plain functions; plain
functions are executed in a worker thread so blocking I/O does not stall the
other executions in the pool. Runners must tolerate being re-invoked for the
same job id since retries re-run them.

Usage:

    from prodgen_Server_API.app.core.Pipeline.runners import get_runner_registry

    registry = get_runner_registry()

    @registry.runner("scrape")
    async def scrape(ctx):
        return {"items": 12}
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from prodgen_Server_API.app.core.Pipeline.exceptions import UnknownStageError
from prodgen_Server_API.app.core.Pipeline.models import JobStage, parse_stage


@dataclass
class StageRunContext:
    job_id: str
    stage: JobStage
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    max_attempts: int = 1
    message_id: Optional[str] = None


StageRunner = Callable[[StageRunContext], Union[Any, Awaitable[Any]]]


class StageRunnerRegistry:
    def __init__(self):
        self._runners: Dict[JobStage, StageRunner] = {}

    def register(self, stage: JobStage | str, runner: StageRunner, *, replace: bool = False) -> None:
        key = parse_stage(stage)
        if key in self._runners and not replace:
            raise ValueError(f"A runner is already registered for stage {key.value}")
        self._runners[key] = runner
        logger.debug(f"Registered stage runner {getattr(runner, '__name__', runner)!r} for {key.value}")

    def runner(self, stage: JobStage | str, *, replace: bool = False) -> Callable[[StageRunner], StageRunner]:
        def decorator(func: StageRunner) -> StageRunner:
            self.register(stage, func, replace=replace)
            return func
        return decorator

    def get(self, stage: JobStage | str) -> Optional[StageRunner]:
        return self._runners.get(parse_stage(stage))

    def stages(self) -> List[JobStage]:
        return [s for s in JobStage if s in self._runners]

    def __contains__(self, stage: object) -> bool:
        try:
            return parse_stage(stage) in self._runners
        except UnknownStageError:
            return False


_registry: Optional[StageRunnerRegistry] = None


def get_runner_registry() -> StageRunnerRegistry:
    global _registry
    if _registry is None:
        _registry = StageRunnerRegistry()
    return _registry


def reset_runner_registry() -> None:
    global _registry
    _registry = None


def load_runner_module(dotted_path: Optional[str]) -> None:
    """Import a module whose import side effect registers stage runners."""
    if not dotted_path:
        return
    importlib.import_module(dotted_path)
    logger.info(f"Loaded stage runners from {dotted_path}")
