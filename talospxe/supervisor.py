"""
Listener supervisor.

Binds every service socket up front, runs each service loop in its own
thread with its own event loop, and returns on the first outcome any of
them reports.

serve() does not wait for the remaining loops. It asks each of them to
cancel and returns; their threads are daemons and the process exit is
what finally closes any socket still open.
"""

import asyncio
import queue
import threading
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from talospxe.errors import ListenerBindError, ListenerError
from talospxe.services.listener import Listener

logger = structlog.get_logger()

Outcome = Tuple[str, Optional[BaseException]]

SHUTDOWN = "shutdown"


class ListenerThread(threading.Thread):
    """Runs one listener's start() on a private event loop and reports one outcome."""

    def __init__(self, listener: Listener, report: Callable[[str, Optional[BaseException]], None]):
        super().__init__(name=f"listener-{listener.name}", daemon=True)
        self.listener = listener
        self._report = report
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    async def _main(self):
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.current_task()
        if self._cancel_requested:
            return
        await self.listener.start()

    def run(self):
        outcome: Optional[BaseException] = None
        try:
            asyncio.run(self._main())
        except asyncio.CancelledError:
            outcome = None
        except BaseException as e:
            outcome = e
        self._report(self.listener.name, outcome)

    def cancel(self):
        """Request cancellation. Returns immediately."""
        self._cancel_requested = True
        loop, task = self._loop, self._task
        if loop is None or task is None:
            return
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # loop already closed
            pass


class ListenerSupervisor:
    """Runs the service listeners and surfaces the first terminal outcome."""

    def __init__(self, listeners: Sequence[Listener]):
        self.listeners: List[Listener] = list(listeners)
        # one slot per listener plus one for shutdown(), so no report ever blocks
        self._outcomes: "queue.Queue[Outcome]" = queue.Queue(maxsize=len(self.listeners) + 1)
        self._threads: List[ListenerThread] = []
        self._delivered = threading.Event()
        self._lock = threading.Lock()

    def bind(self):
        """
        Bind every listener socket, or none.

        Raises:
            ListenerBindError: a socket could not be bound; those already
                bound are closed again.
        """
        bound: List[Listener] = []
        for listener in self.listeners:
            try:
                listener.bind()
            except OSError as e:
                logger.error("listener_bind_failed", listener=listener.name, error=str(e))
                for other in bound:
                    other.close()
                raise ListenerBindError(f"{listener.name}: {e}") from e
            bound.append(listener)

    def _report(self, name: str, outcome: Optional[BaseException]):
        try:
            self._outcomes.put_nowait((name, outcome))
        except queue.Full:
            logger.warning("listener_outcome_dropped", listener=name)

    def serve(self):
        """
        Serve until the first listener outcome or shutdown().

        Returns None on a clean stop.

        Raises:
            ListenerBindError: binding failed; nothing was started.
            ListenerError: a listener terminated with an error.
        """
        self.bind()

        logger.info("starting_listeners", listeners=[listener.name for listener in self.listeners])
        for listener in self.listeners:
            thread = ListenerThread(listener, self._report)
            self._threads.append(thread)
            thread.start()

        name, error = self._outcomes.get()
        self._delivered.set()
        self.cancel_all()

        if error is None:
            logger.info("listeners_stopping", trigger=name)
            return None

        logger.error("listener_failed", listener=name, error=str(error))
        raise ListenerError(name, error) from error

    def cancel_all(self):
        """Best-effort cancellation of every listener. Does not join."""
        for thread in self._threads:
            thread.cancel()

    def shutdown(self):
        """Make serve() return cleanly, unless an outcome is already pending or delivered."""
        with self._lock:
            if self._delivered.is_set() or not self._outcomes.empty():
                return
            self._report(SHUTDOWN, None)
