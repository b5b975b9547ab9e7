"""MCU heartbeat watchdog."""

import logging
import threading
import time
from collections.abc import Callable

from deltahri.errors import HeartbeatMissed

logger = logging.getLogger(__name__)


class HeartbeatWatchdog:
    """
    Reports when no heartbeat arrives within ``timeout`` seconds.

    The watchdog keeps running after a miss and reports again every period
    while the MCU stays silent. A miss is never fatal.
    """

    def __init__(
        self,
        timeout: float,
        on_missed: Callable[[HeartbeatMissed], None] | None = None,
    ):
        self.timeout = timeout
        self._on_missed = on_missed
        self._kick = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.missed = 0
        self.last_heartbeat = 0.0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._kick.clear()
        self.last_heartbeat = time.monotonic()
        self._thread = threading.Thread(
            target=self._run, name="deltahri-heartbeat", daemon=True
        )
        self._thread.start()

    def kick(self) -> None:
        """Re-arm the watchdog; call on every heartbeat frame."""
        self.last_heartbeat = time.monotonic()
        self._kick.set()

    def stop(self) -> None:
        self._stop.set()
        self._kick.set()
        if self._thread is not None:
            self._thread.join(timeout=max(1.0, self.timeout))
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            if self._kick.wait(self.timeout):
                self._kick.clear()
                continue
            if self._stop.is_set():
                break
            self.missed += 1
            err = HeartbeatMissed(f"no MCU heartbeat for {self.timeout:.1f}s")
            logger.warning("MCU heartbeat missed (%d)", self.missed)
            if self._on_missed is not None:
                try:
                    self._on_missed(err)
                except Exception:
                    logger.exception("Heartbeat miss handler failed")
