"""Cancellation token shared by a run, its transport read loop and its owner."""

from __future__ import annotations

import asyncio
import logging

from conduit.errors import RunCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal for one run.

    The decoder checks ``cancelled`` at every read boundary. When the
    token is bound to the task running the run, ``cancel()`` also cancels
    that task so a read blocked on the network is interrupted and the
    HTTP response is closed.

    Cancelling is idempotent: a second call, or a call after the run
    has finished, does nothing.
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id
        self._event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task) -> None:
        """Attach the task executing the run."""
        self._task = task

    def release(self) -> None:
        """Detach from the run task once the run has settled."""
        self._task = None

    def cancel(self) -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self._event.set()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("Cancel requested for request %s", self.request_id)
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled()

    async def wait(self) -> None:
        await self._event.wait()
