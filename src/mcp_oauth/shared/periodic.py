"""Periodic background work on the running event loop."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

_TEST_ENV_VARS = ("PYTEST_CURRENT_TEST", "PYTEST_XDIST_WORKER", "TEST_ENV")
_ENVIRONMENT_VARS = ("APP_ENV", "ENVIRONMENT", "PYTHON_ENV")


def is_test_environment(environ: Mapping[str, str] | None = None) -> bool:
    """Detect a test runner from any of several independent signals."""
    env = os.environ if environ is None else environ
    if any(env.get(name) for name in _TEST_ENV_VARS):
        return True
    return any("test" in env.get(name, "").lower() for name in _ENVIRONMENT_VARS)


class PeriodicTask:
    """Runs an async callable repeatedly from a single background task.

    The first run happens after `initial_delay`, then every `interval`
    seconds. A failing run is logged and the next one still happens.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        initial_delay: float = 0.0,
    ):
        self.name = name
        self._func = func
        self.interval = interval
        self.initial_delay = initial_delay
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the background task.

        Safe to call multiple times - subsequent calls are ignored if already
        running.

        Returns:
            True if a new task was started
        """
        if self.running:
            return False
        self._task = asyncio.create_task(self._run(), name=self.name)
        return True

    async def stop(self) -> None:
        """Cancel the background task. Safe to call multiple times."""
        if self._task is None:
            return

        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if self.initial_delay > 0:
            await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self._func()
            except Exception:
                logger.exception(f"Periodic task {self.name} failed")
            await asyncio.sleep(self.interval)
