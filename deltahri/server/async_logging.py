"""Queue-based logging for the link and interaction threads."""

import logging
import queue
from logging.handlers import QueueHandler, QueueListener

DEFAULT_LOGGERS: tuple[str, ...] = (
    "deltahri.server.game",
    "deltahri.server.transports.serial_transport",
    "deltahri.server.correlator",
)


def _effective_handlers(logger: logging.Logger) -> list[logging.Handler]:
    """Handlers that would receive this logger's records (usually the root's)."""
    current: logging.Logger | None = logger
    while current is not None:
        if current.handlers:
            return current.handlers[:]
        if not current.propagate:
            break
        current = current.parent
    return []


class AsyncLogHandler:
    """Non-blocking logging for a set of loggers.

    Records from the wrapped loggers are put on one queue and written by a
    single QueueListener thread, so a slow console or file handler cannot
    stall the receive loop while it is parsing telemetry, or delay a
    convergence check in the interaction loop.
    """

    def __init__(self, *logger_names: str):
        """
        Args:
            logger_names: Loggers to wrap; defaults to the link and game loggers.
        """
        self._queue: queue.Queue[logging.LogRecord] = queue.Queue(-1)
        self._listener: QueueListener | None = None
        self._loggers = [logging.getLogger(n) for n in (logger_names or DEFAULT_LOGGERS)]
        self._saved: list[tuple[logging.Logger, list[logging.Handler], bool]] = []
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Route the wrapped loggers through the queue.

        Call after logging is configured and before the threads start.
        """
        if self._started:
            return

        targets: list[logging.Handler] = []
        for lg in self._loggers:
            for h in _effective_handlers(lg):
                if h not in targets:
                    targets.append(h)
        if not targets:
            return

        queue_handler = QueueHandler(self._queue)
        for lg in self._loggers:
            self._saved.append((lg, lg.handlers[:], lg.propagate))
            lg.handlers = [queue_handler]
            lg.propagate = False

        self._listener = QueueListener(self._queue, *targets, respect_handler_level=True)
        self._listener.start()
        self._started = True

    def stop(self) -> None:
        """Flush queued records and restore the original handlers."""
        if not self._started:
            return

        if self._listener:
            self._listener.stop()
            self._listener = None

        for lg, handlers, propagate in self._saved:
            lg.handlers = handlers
            lg.propagate = propagate
        self._saved = []
        self._started = False
