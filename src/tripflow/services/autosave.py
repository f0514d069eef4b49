"""Periodic flush task with an explicitly owned lifecycle."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class AutoSaveTask:
    """Runs ``flush`` every ``interval`` seconds until stopped.

    A failing flush is logged and retried on the next tick.
    """

    def __init__(self, flush: Callable[[], None], interval: float = 30, name: str = "autosave"):
        if interval <= 0:
            raise ValueError("Auto-save interval must be positive")
        self.flush = flush
        self.interval = interval
        self.name = name
        self.flush_count = 0
        self._runner: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> "AutoSaveTask":
        """Start the loop on the running event loop. Idempotent."""
        if not self.running:
            self._runner = asyncio.get_running_loop().create_task(self._run_loop(), name=self.name)
            logger.debug(f"Started {self.name} every {self.interval}s")
        return self

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.flush()
                self.flush_count += 1
            except Exception as e:
                logger.error(f"{self.name} flush failed: {e}")

    def stop(self) -> None:
        """Request cancellation without waiting for it."""
        if self._runner is not None:
            self._runner.cancel()

    async def aclose(self) -> None:
        """Cancel the loop and wait for it to finish."""
        runner, self._runner = self._runner, None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            logger.debug(f"{self.name} stopped")

    async def __aenter__(self) -> "AutoSaveTask":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
