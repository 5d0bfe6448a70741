from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from .config import Settings
from .executor import CommandExecutor
from .planner import ModelServerBackend, PlannerBackend, PlannerClient
from .sessions import SessionRegistry
from .streaming import StreamingCoordinator


@dataclass
class Hub:
    """Everything the transport layer and the session workers share."""

    settings: Settings
    registry: SessionRegistry
    planner: PlannerClient
    executor: CommandExecutor
    coordinator: StreamingCoordinator
    # live per-session ai_loop tasks; cancelled at shutdown
    workers: set[asyncio.Task] = field(default_factory=set)

    def track_worker(self, task: asyncio.Task) -> asyncio.Task:
        self.workers.add(task)
        task.add_done_callback(self.workers.discard)
        return task

    async def stop_workers(self) -> None:
        workers = list(self.workers)
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self.workers.clear()


def build_hub(settings: Settings, backend: PlannerBackend | None = None) -> Hub:
    registry = SessionRegistry()
    planner = PlannerClient(backend or ModelServerBackend(settings), settings)
    executor = CommandExecutor(registry, settings)
    coordinator = StreamingCoordinator(registry, planner, executor, settings)
    return Hub(
        settings=settings,
        registry=registry,
        planner=planner,
        executor=executor,
        coordinator=coordinator,
    )
