"""Cooperative cancellation handle shared between a run and its stop requests."""

from __future__ import annotations

import asyncio
import threading
from typing import Optional

from automode.errors import OperationAborted

__all__ = ["AbortHandle"]


class AbortHandle:
    """Cancellation flag that can be triggered from any thread.

    Coroutines observe it either by polling :attr:`aborted` at their
    suspension points or by awaiting :meth:`wait`.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._flag.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._flag.is_set():
                return
            self.reason = reason
            self._flag.set()
            waiters = list(self._waiters)
        for loop, event in waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # Loop already closed; nobody is left waiting on it.
                continue

    async def wait(self) -> None:
        """Return once the handle has been aborted."""

        event = asyncio.Event()
        entry = (asyncio.get_running_loop(), event)
        with self._lock:
            if self._flag.is_set():
                return
            self._waiters.append(entry)
        try:
            await event.wait()
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise OperationAborted(self.reason or "Operation aborted")

    def __repr__(self) -> str:
        return f"AbortHandle(aborted={self.aborted})"
