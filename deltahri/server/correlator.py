"""
Synchronous reply correlation.

The MCU answers synchronous commands strictly in the order they were issued,
so replies are matched against a FIFO of pending slots. There is no
out-of-order matching; a reply always resolves the oldest outstanding slot.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass
from typing import Any

from deltahri.errors import MalformedPacket, ProtocolDesync
from deltahri.protocol.wire import Packet

logger = logging.getLogger(__name__)

ReplyDecoder = Callable[[bytes], Any]


@dataclass(slots=True, frozen=True)
class PendingReply:
    """One outstanding synchronous command."""

    command_id: int
    future: "Future[Any] | None" = None
    decode: ReplyDecoder | None = None


class ReplyCorrelator:
    """FIFO of continuations waiting for synchronous replies."""

    def __init__(self, strict: bool = False):
        """
        Args:
            strict: Raise ProtocolDesync for a reply with nothing pending
                instead of logging and dropping it.
        """
        self._pending: deque[PendingReply] = deque()
        self._lock = threading.Lock()
        self.strict = strict
        self.unmatched_replies = 0
        self.resolved_replies = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def expect(self, slot: PendingReply) -> None:
        """Register a slot for a command that is about to go on the wire."""
        with self._lock:
            self._pending.append(slot)

    def withdraw_last(self) -> PendingReply | None:
        """Remove the most recent slot (its command never reached the wire)."""
        with self._lock:
            if not self._pending:
                return None
            return self._pending.pop()

    def resolve(self, packet: Packet) -> bool:
        """
        Hand a synchronous reply to the oldest pending slot.

        Returns:
            True if a slot consumed the reply.

        Raises:
            ProtocolDesync: In strict mode, when nothing is pending.
        """
        with self._lock:
            slot = self._pending.popleft() if self._pending else None

        if slot is None:
            self.unmatched_replies += 1
            if self.strict:
                raise ProtocolDesync(f"reply with no pending command: {packet.describe()}")
            logger.warning("Dropping reply with no pending command: %s", packet.describe())
            return False

        self.resolved_replies += 1
        if packet.id != slot.command_id:
            logger.debug(
                "Reply id %r differs from command id %r",
                chr(packet.id),
                chr(slot.command_id),
            )

        fut = slot.future
        if fut is None or fut.done():
            return True

        try:
            if slot.decode is None:
                fut.set_result(packet.payload)
                return True
            try:
                value = slot.decode(packet.payload)
            except MalformedPacket as e:
                fut.set_exception(e)
            else:
                fut.set_result(value)
        except InvalidStateError:
            # Cancelled by its owner after the done() check
            logger.debug("Reply for %r arrived after its future was cancelled", chr(slot.command_id))
        return True

    def cancel_all(self) -> int:
        """Cancel every outstanding slot. Returns the number cancelled."""
        with self._lock:
            slots = list(self._pending)
            self._pending.clear()
        for slot in slots:
            if slot.future is not None:
                slot.future.cancel()
        return len(slots)
