"""Async facade over ProcessSupervisor.

artifact-launcher runtime module v0.1.0

The supervisor's blocking calls run in worker threads via anyio, so an
asyncio (or trio) caller can await readiness and shutdown without stalling
its event loop. Cancelling an awaiting task abandons the worker thread; the
supervisor itself is unaffected.
"""

from __future__ import annotations

import logging
from typing import Any

import anyio
import anyio.to_thread

from ..errors import SupervisorError
from .launcher import ProcessLauncher
from .spec import LaunchSpec
from .supervisor import ProcessSupervisor
from .types import SupervisorSnapshot, SupervisorState

__all__ = ["AsyncProcessSupervisor", "launch_async"]

logger = logging.getLogger(__name__)


class AsyncProcessSupervisor:
    """Awaitable wrapper around one ProcessSupervisor.

    Example:
        async with await launch_async(spec) as supervisor:
            error = await supervisor.await_ready(timeout=60)
            if error:
                raise error
    """

    def __init__(self, supervisor: ProcessSupervisor) -> None:
        self._supervisor = supervisor

    def __repr__(self) -> str:
        return f"AsyncProcessSupervisor({self._supervisor!r})"

    async def __aenter__(self) -> "AsyncProcessSupervisor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        # Shielded so a cancelled caller still reaps the child
        with anyio.CancelScope(shield=True):
            await self.stop()

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def pid(self) -> int:
        return self._supervisor.pid

    @property
    def state(self) -> SupervisorState:
        return self._supervisor.state

    def is_alive(self) -> bool:
        return self._supervisor.is_alive()

    def last_error(self) -> SupervisorError | None:
        return self._supervisor.last_error()

    def snapshot(self) -> SupervisorSnapshot:
        return self._supervisor.snapshot()

    async def await_ready(self, timeout: float | None = None) -> SupervisorError | None:
        return await anyio.to_thread.run_sync(
            self._supervisor.await_ready, timeout, abandon_on_cancel=True
        )

    async def wait(self, timeout: float | None = None) -> int | None:
        return await anyio.to_thread.run_sync(
            self._supervisor.wait, timeout, abandon_on_cancel=True
        )

    async def stop(self, timeout: float | None = None) -> None:
        await anyio.to_thread.run_sync(self._supervisor.stop, timeout)

    async def kill(self) -> None:
        await anyio.to_thread.run_sync(self._supervisor.kill)


async def launch_async(spec: LaunchSpec, **kwargs: Any) -> AsyncProcessSupervisor:
    """Launch ``spec`` in a worker thread and wrap the supervisor.

    Keyword arguments are passed to ProcessLauncher.
    """
    launcher = ProcessLauncher(**kwargs)
    supervisor = await anyio.to_thread.run_sync(launcher.launch, spec)
    logger.debug(f"Launched {supervisor!r}")
    return AsyncProcessSupervisor(supervisor)
