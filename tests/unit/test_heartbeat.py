"""
Unit tests for the heartbeat watchdog.
"""

import time

from deltahri.errors import HeartbeatMissed
from deltahri.server.heartbeat import HeartbeatWatchdog


class TestHeartbeatWatchdog:
    def test_reports_repeatedly_while_silent(self, wait_until):
        misses = []
        wd = HeartbeatWatchdog(0.05, misses.append)
        wd.start()
        try:
            assert wait_until(lambda: len(misses) >= 2)
        finally:
            wd.stop()
        assert all(isinstance(m, HeartbeatMissed) for m in misses)
        assert wd.missed >= 2

    def test_kicks_keep_it_quiet(self):
        misses = []
        wd = HeartbeatWatchdog(0.2, misses.append)
        wd.start()
        try:
            deadline = time.monotonic() + 0.5
            while time.monotonic() < deadline:
                wd.kick()
                time.sleep(0.02)
        finally:
            wd.stop()
        assert misses == []
        assert wd.missed == 0

    def test_handler_error_is_logged(self, wait_until, caplog):
        def bad(_err):
            raise RuntimeError("handler broke")

        wd = HeartbeatWatchdog(0.02, bad)
        with caplog.at_level("ERROR"):
            wd.start()
            try:
                assert wait_until(lambda: wd.missed >= 2)
            finally:
                wd.stop()
        assert "Heartbeat miss handler failed" in caplog.text

    def test_stop_joins_thread(self):
        wd = HeartbeatWatchdog(5.0)
        wd.start()
        assert wd.is_running()
        wd.stop()
        assert not wd.is_running()

    def test_kick_records_time(self):
        wd = HeartbeatWatchdog(1.0)
        before = time.monotonic()
        wd.kick()
        assert wd.last_heartbeat >= before
