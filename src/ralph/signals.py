from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Iterable
from typing import Any

from ralph.process import ChildProcessController

SIGNAL_EXIT_CODE = 130
DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)

EventHook = Callable[[dict[str, Any]], None]


class SignalBridge:
    """Turns termination signals into a bounded child shutdown plus cancellation.

    Handlers are registered with ``loop.add_signal_handler`` so they run as
    ordinary callbacks on the event loop, interleaved with (never inside) the
    supervisor's own reads and writes of the active child handle.
    """

    def __init__(
        self,
        controller: ChildProcessController,
        *,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
        event_hook: EventHook | None = None,
    ) -> None:
        self.controller = controller
        self.signals = tuple(signals)
        self.event_hook = event_hook
        self.received: signal.Signals | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._target: asyncio.Task[Any] | None = None
        self._shutdown: asyncio.Task[int | None] | None = None
        self._installed: list[signal.Signals] = []

    @property
    def triggered(self) -> bool:
        return self.received is not None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def install(self, target: asyncio.Task[Any]) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._target = target
        for signum in self.signals:
            loop.add_signal_handler(signum, self.trigger, signum)
            self._installed.append(signum)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for signum in self._installed:
            self._loop.remove_signal_handler(signum)
        self._installed.clear()

    def trigger(self, signum: signal.Signals) -> None:
        if self.triggered:
            return
        self.received = signal.Signals(signum)
        child = self.controller.active
        self._emit(
            {
                "event": "signal_received",
                "signal": self.received.name,
                "child_pid": child.pid if child is not None else None,
            }
        )
        loop = self._loop or asyncio.get_running_loop()
        self._shutdown = loop.create_task(self.controller.terminate())
        if self._target is not None and not self._target.done():
            self._target.cancel()

    async def wait_shutdown(self) -> int | None:
        if self._shutdown is None:
            return None
        return await asyncio.shield(self._shutdown)
