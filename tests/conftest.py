"""Shared fixtures."""

import threading
import time

import pytest

from deltahri.protocol.wire import LINE_TERMINATOR


class FakeSerial:
    """
    In-memory stand-in for serial.Serial.

    Lines queued with feed() are returned by read_until(); read_until()
    returns b"" after ``timeout`` seconds with nothing queued.
    """

    def __init__(self, timeout: float = 0.05):
        self.timeout = timeout
        self.is_open = True
        self.written: list[bytes] = []
        self.write_error: Exception | None = None
        self._chunks: list[bytes] = []
        self._cond = threading.Condition()

    def feed(self, frame: bytes, terminate: bool = True) -> None:
        with self._cond:
            self._chunks.append(frame + (LINE_TERMINATOR if terminate else b""))
            self._cond.notify_all()

    def read_until(self, expected: bytes = LINE_TERMINATOR, size=None) -> bytes:
        deadline = time.monotonic() + self.timeout
        with self._cond:
            while not self._chunks and self.is_open:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                self._cond.wait(remaining)
            if not self.is_open:
                return b""
            return self._chunks.pop(0)

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        with self._cond:
            self.written.append(bytes(data))
            self._cond.notify_all()
        return len(data)

    def wait_for_writes(self, count: int, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while len(self.written) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def cancel_read(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fake_serial():
    return FakeSerial()


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until
