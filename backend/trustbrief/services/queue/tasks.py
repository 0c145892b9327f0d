"""
The function every rq job runs.

rq workers are synchronous; the stage handlers are coroutines that share an
async database engine and HTTP clients. A worker process therefore builds
one WorkerRuntime (an event loop plus the QueueManager whose handlers are
registered on it) and installs it here before it starts taking jobs.
run_job() then hands each job to the runtime's loop.
"""

import asyncio
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional

from rq import get_current_job


@dataclass
class WorkerRuntime:
    loop: asyncio.AbstractEventLoop
    # QueueManager with handlers registered
    queues: Any
    on_close: Optional[Callable[[], Awaitable[None]]] = None

    def run(self, coro: Coroutine) -> Any:
        """Run coro on the runtime's loop and wait for its result."""
        if self.loop.is_running():
            # Loop owned by another thread (the API process, tests)
            future: Future = asyncio.run_coroutine_threadsafe(coro, self.loop)
            return future.result()
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        if self.on_close is not None:
            self.run(self.on_close())
        if not self.loop.is_running():
            self.loop.close()


_runtime: Optional[WorkerRuntime] = None


def install_runtime(runtime: Optional[WorkerRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> WorkerRuntime:
    if _runtime is None:
        raise RuntimeError("No worker runtime installed; start workers with trustbrief-worker")
    return _runtime


def run_job(queue_name: str, payload: dict) -> None:
    runtime = get_runtime()
    runtime.run(runtime.queues.process(queue_name, payload, get_current_job()))
