"""
Serial link transport for the delta robot microcontroller.

This module owns the serial connection and runs the two link threads:
- a send loop that drains the outbound command queue onto the wire
- a receive loop that reads frames, feeds synchronous replies to the
  correlator and routes unsolicited packets to their handlers
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import asdict, dataclass
from typing import Any

import serial

from deltahri import DELTA_ROBOT, kinematics
from deltahri.config import (
    HEARTBEAT_TIMEOUT_S,
    RECONNECT_INTERVAL_S,
    SERIAL_BAUD,
    SERIAL_READ_TIMEOUT_S,
    SERIAL_WRITE_TIMEOUT_S,
)
from deltahri.DELTA_ROBOT import DeltaGeometry
from deltahri.errors import (
    Cancelled,
    HeartbeatMissed,
    MalformedPacket,
    ProtocolDesync,
    ReadTimeout,
    WriteTimeout,
)
from deltahri.protocol.types import ForceSample, ImpedanceSetting, Position, PositionSample
from deltahri.protocol.wire import (
    DEFAULT_TAG,
    LINE_TERMINATOR,
    AsyncId,
    CommandId,
    Packet,
    decode,
    decode_text,
    encode,
    is_heartbeat,
    is_null_frame,
    pack_enable,
    pack_impedance,
    pack_target_force,
    pack_vec3,
    unpack_enable,
    unpack_force,
    unpack_joint_angles,
    unpack_vec3,
)
from deltahri.server.correlator import PendingReply, ReplyCorrelator, ReplyDecoder
from deltahri.server.heartbeat import HeartbeatWatchdog

logger = logging.getLogger(__name__)

PositionListener = Callable[[PositionSample], None]
ForceListener = Callable[[ForceSample], None]
AsyncHandler = Callable[[Packet], None]


@dataclass(slots=True, frozen=True)
class Command:
    """An outbound unit of work owned by the link until its reply arrives."""

    command_id: int
    payload: bytes = b""
    expects_reply: bool = True
    future: "Future[Any] | None" = None
    decode: ReplyDecoder | None = None
    tag: int = DEFAULT_TAG


class _StopSending:
    """Send-queue sentinel."""


_STOP = _StopSending()


@dataclass(slots=True)
class LinkStats:
    """Link counters."""

    tx_frames: int = 0
    rx_frames: int = 0
    heartbeats: int = 0
    malformed: int = 0
    dropped_commands: int = 0
    read_timeouts: int = 0
    read_errors: int = 0
    unreachable: int = 0
    unknown_async: int = 0
    dispatch_errors: int = 0


class LinkTransport:
    """
    Manages the serial link to the robot microcontroller.

    This class handles:
    - Serial port connection
    - The send and receive threads
    - Reply correlation for synchronous commands
    - Unsolicited telemetry (joint angles, force, MCU prints)
    - The heartbeat watchdog
    """

    def __init__(
        self,
        port: str | None = None,
        baudrate: int = SERIAL_BAUD,
        read_timeout: float = SERIAL_READ_TIMEOUT_S,
        write_timeout: float = SERIAL_WRITE_TIMEOUT_S,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_S,
        geometry: DeltaGeometry = DELTA_ROBOT.geometry,
        strict: bool = False,
    ):
        """
        Initialize the link transport.

        Args:
            port: Serial port name (e.g., 'COM5', '/dev/ttyACM0')
            baudrate: Baud rate for serial communication
            read_timeout: Seconds a line read may block before it is retried
            write_timeout: Seconds a write may block before the command is dropped
            heartbeat_timeout: Watchdog period for MCU heartbeats
            geometry: Mechanism dimensions used to convert joint angles
            strict: Treat a reply with no pending command as an error
        """
        self.port = port
        self.baudrate = baudrate
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.geometry = geometry
        self.serial: Any | None = None

        self.correlator = ReplyCorrelator(strict=strict)
        self.watchdog = HeartbeatWatchdog(heartbeat_timeout, self._on_heartbeat_missed)
        self.stats = LinkStats()

        self._outbound: queue.Queue[Command | _StopSending] = queue.Queue()
        self._running = threading.Event()
        self._stopped = threading.Event()
        # Orders submit's stopped check and put against stop's drain
        self._submit_lock = threading.Lock()
        self._send_thread: threading.Thread | None = None
        self._recv_thread: threading.Thread | None = None
        self._partial = bytearray()
        self._read_error_streak = 0

        self._position_listeners: list[PositionListener] = []
        self._force_listeners: list[ForceListener] = []
        self._heartbeat_listeners: list[Callable[[HeartbeatMissed], None]] = []
        self._async_handlers: dict[int, AsyncHandler] = {
            AsyncId.JOINT_ANGLES: self._handle_joint_angles,
            AsyncId.FORCE: self._handle_force,
            AsyncId.PRINT: self._handle_print,
        }
        self.latest_position: PositionSample | None = None

    # ================================
    # Connection
    # ================================
    def connect(self, port: str | None = None) -> bool:
        """
        Open the serial port.

        Args:
            port: Optional port override. If not provided, uses stored port.

        Returns:
            True if connection successful, False otherwise
        """
        if port:
            self.port = port
        if not self.port:
            logger.warning("No serial port specified")
            return False

        try:
            if self.serial is not None and getattr(self.serial, "is_open", False):
                self.serial.close()
            self.serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=self.read_timeout,
                write_timeout=self.write_timeout,
            )
        except serial.SerialException as e:
            logger.error(f"Couldn't open serial port {self.port}: {e}")
            self.serial = None
            return False

        if not self.serial.is_open:
            logger.error(f"Failed to open serial port: {self.port}")
            return False
        logger.info(f"Connected to serial port: {self.port} @ {self.baudrate}")
        return True

    def attach(self, port_obj: Any, name: str | None = None) -> None:
        """Use an already open port object (e.g. the simulated MCU)."""
        self.serial = port_obj
        if name:
            self.port = name

    def is_connected(self) -> bool:
        return self.serial is not None and bool(getattr(self.serial, "is_open", False))

    def is_running(self) -> bool:
        return self._running.is_set()

    # ================================
    # Lifecycle
    # ================================
    def start(self) -> None:
        """Start the send and receive threads and arm the heartbeat watchdog."""
        if self._running.is_set():
            return
        if not self.is_connected():
            raise RuntimeError("Serial link is not connected")

        for reset in ("reset_input_buffer", "reset_output_buffer"):
            fn = getattr(self.serial, reset, None)
            if fn is not None:
                fn()

        self._stopped.clear()
        self._running.set()
        self._send_thread = threading.Thread(
            target=self._send_loop, name="deltahri-send", daemon=True
        )
        self._recv_thread = threading.Thread(
            target=self._receive_loop, name="deltahri-recv", daemon=True
        )
        self._send_thread.start()
        self._recv_thread.start()
        self.watchdog.start()
        logger.info("Serial link started")

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop both link threads and close the port.

        Commands still waiting for a reply, and commands never sent, have
        their futures cancelled.
        """
        self._running.clear()
        with self._submit_lock:
            self._stopped.set()
            self._outbound.put(_STOP)

        ser = self.serial
        if ser is not None:
            cancel_read = getattr(ser, "cancel_read", None)
            if cancel_read is not None:
                try:
                    cancel_read()
                except (serial.SerialException, OSError) as e:
                    logger.debug("cancel_read failed: %s", e)
            try:
                ser.close()
            except (serial.SerialException, OSError) as e:
                logger.error(f"Error closing serial port: {e}")

        for thread in (self._send_thread, self._recv_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("Link thread %s did not exit", thread.name)
        self._send_thread = None
        self._recv_thread = None
        self.watchdog.stop()

        with self._submit_lock:
            unsent = self._drain_outbound()
        pending = self.correlator.cancel_all()
        if pending or unsent:
            logger.info(
                "Link stopped with %d pending replies and %d unsent commands cancelled",
                pending,
                unsent,
            )
        self.serial = None
        logger.info(f"Disconnected from serial port: {self.port}")

    def _drain_outbound(self) -> int:
        count = 0
        while True:
            try:
                item = self._outbound.get_nowait()
            except queue.Empty:
                return count
            if isinstance(item, Command):
                count += 1
                if item.future is not None:
                    item.future.cancel()

    # ================================
    # Subscriptions
    # ================================
    def subscribe_positions(self, listener: PositionListener) -> None:
        self._position_listeners.append(listener)

    def unsubscribe_positions(self, listener: PositionListener) -> None:
        if listener in self._position_listeners:
            self._position_listeners.remove(listener)

    def subscribe_forces(self, listener: ForceListener) -> None:
        self._force_listeners.append(listener)

    def unsubscribe_forces(self, listener: ForceListener) -> None:
        if listener in self._force_listeners:
            self._force_listeners.remove(listener)

    def subscribe_heartbeat_missed(
        self, listener: Callable[[HeartbeatMissed], None]
    ) -> None:
        self._heartbeat_listeners.append(listener)

    def register_async_handler(self, packet_id: int, handler: AsyncHandler) -> None:
        self._async_handlers[packet_id] = handler

    # ================================
    # Commands
    # ================================
    def submit(self, command: Command) -> "Future[Any] | None":
        """Queue a command for the send loop."""
        with self._submit_lock:
            if not self._stopped.is_set():
                self._outbound.put(command)
                return command.future
        if command.future is not None:
            command.future.cancel()
        logger.debug("Link stopped, discarding command %r", chr(command.command_id))
        return command.future

    def send(
        self,
        command_id: int,
        payload: bytes = b"",
        on_reply: Callable[[Any], None] | None = None,
        decode_reply: ReplyDecoder | None = None,
    ) -> "Future[Any]":
        """
        Send a synchronous command.

        Args:
            command_id: Packet id
            payload: Raw payload
            on_reply: Continuation called with the decoded reply
            decode_reply: Converts the reply payload; raw bytes if omitted

        Returns:
            Future resolved with the reply, failed with WriteTimeout if the
            command was dropped, or cancelled when the link stops.
        """
        fut: Future[Any] = Future()
        if on_reply is not None:
            fut.add_done_callback(_continuation(on_reply))
        self.submit(
            Command(
                command_id=int(command_id),
                payload=payload,
                future=fut,
                decode=decode_reply,
            )
        )
        return fut

    def set_target_position(
        self,
        x: float,
        y: float,
        z: float,
        on_reply: Callable[[tuple[float, float, float]], None] | None = None,
    ) -> "Future[tuple[float, float, float]]":
        return self.send(
            CommandId.SET_TARGET_POSITION, pack_vec3(x, y, z), on_reply, unpack_vec3
        )

    def set_impedance(
        self,
        setting: ImpedanceSetting,
        on_reply: Callable[[tuple[float, float, float]], None] | None = None,
    ) -> "Future[tuple[float, float, float]]":
        return self.send(
            CommandId.SET_IMPEDANCE, pack_impedance(setting), on_reply, unpack_vec3
        )

    def set_enabled(
        self, enabled: bool, on_reply: Callable[[bool], None] | None = None
    ) -> "Future[bool]":
        return self.send(CommandId.ENABLE, pack_enable(enabled), on_reply, unpack_enable)

    def set_target_force(
        self,
        position: Position,
        force: tuple[float, float, float],
        on_reply: Callable[[bytes], None] | None = None,
    ) -> "Future[bytes]":
        return self.send(
            CommandId.SET_TARGET_FORCE, pack_target_force(position, force), on_reply
        )

    def handle_command(self, text: str) -> bool:
        """Handle a textual maintenance command ("reset", "erase")."""
        parts = text.strip().split(" ")
        match parts[0]:
            case "reset":
                self.submit(Command(command_id=CommandId.RESET, expects_reply=False))
                return True
            case "erase":
                logger.info("Erase command is not supported by the MCU firmware yet")
                return True
            case _:
                logger.warning("Comms unrecognized command: %r", text)
                return False

    # ================================
    # Send loop
    # ================================
    def _send_loop(self) -> None:
        while True:
            item = self._outbound.get()
            if isinstance(item, _StopSending):
                break
            self._write_command(item)
        logger.debug("Send loop exited")

    def _write_command(self, cmd: Command) -> None:
        ser = self.serial
        if ser is None:
            self._drop(cmd, Cancelled("serial link closed"))
            return

        frame = LINE_TERMINATOR + encode(cmd.tag, cmd.command_id, cmd.payload) + LINE_TERMINATOR
        if cmd.expects_reply:
            self.correlator.expect(PendingReply(cmd.command_id, cmd.future, cmd.decode))
        try:
            ser.write(frame)
        except serial.SerialTimeoutException:
            logger.warning("Serial write timeout, dropping %r command", chr(cmd.command_id))
            self._withdraw(cmd)
            self._drop(cmd, WriteTimeout(f"write of {chr(cmd.command_id)!r} timed out"))
            return
        except (serial.SerialException, OSError, TypeError, AttributeError) as e:
            if self._running.is_set():
                logger.error("Serial write error: %s", e)
            self._withdraw(cmd)
            self._drop(cmd, Cancelled(f"serial write failed: {e}"))
            return

        self.stats.tx_frames += 1
        logger.trace("TX %r", frame)  # type: ignore[attr-defined]

    def _withdraw(self, cmd: Command) -> None:
        if cmd.expects_reply:
            self.correlator.withdraw_last()

    def _drop(self, cmd: Command, reason: Exception) -> None:
        self.stats.dropped_commands += 1
        fut = cmd.future
        if fut is None or fut.done():
            return
        if isinstance(reason, Cancelled):
            fut.cancel()
        else:
            fut.set_exception(reason)

    # ================================
    # Receive loop
    # ================================
    def _receive_loop(self) -> None:
        while self._running.is_set():
            ser = self.serial
            if ser is None:
                break
            try:
                frame = self._read_frame(ser)
            except ReadTimeout:
                self.stats.read_timeouts += 1
                logger.debug("Serial read timeout")
                continue
            except (serial.SerialException, OSError, TypeError, AttributeError) as e:
                if not self._running.is_set():
                    break
                self.stats.read_errors += 1
                self._read_error_streak += 1
                log_level = logging.DEBUG if self._read_error_streak > 1 else logging.ERROR
                logger.log(log_level, f"Serial read error: {e}")
                self._stopped.wait(RECONNECT_INTERVAL_S)
                continue

            self._read_error_streak = 0
            if not self._running.is_set():
                break
            try:
                self.process_frame(frame)
            except Exception:
                self.stats.dispatch_errors += 1
                logger.exception("Failed to process frame %r", frame)
        logger.debug("Receive loop exited")

    def _read_frame(self, ser: Any) -> bytes:
        """Read one line. Raises ReadTimeout if the line is incomplete."""
        data = ser.read_until(LINE_TERMINATOR)
        if not data.endswith(LINE_TERMINATOR):
            if data:
                self._partial.extend(data)
            raise ReadTimeout("no complete frame before read timeout")
        if self._partial:
            frame = bytes(self._partial) + data[:-1]
            self._partial.clear()
            return frame
        return bytes(data[:-1])

    def process_frame(self, frame: bytes) -> None:
        """Filter, decode and dispatch one received frame."""
        if is_null_frame(frame):
            return
        if is_heartbeat(frame):
            self.stats.heartbeats += 1
            self.watchdog.kick()
            return

        logger.trace("RX %r", frame)  # type: ignore[attr-defined]
        try:
            packet = decode(frame)
        except MalformedPacket as e:
            self.stats.malformed += 1
            logger.warning("Dropping malformed frame %r: %s", frame, e)
            return

        self.stats.rx_frames += 1
        if packet.synchronous:
            try:
                self.correlator.resolve(packet)
            except ProtocolDesync as e:
                logger.error("Reply correlation lost: %s", e)
            return

        handler = self._async_handlers.get(packet.id)
        if handler is None:
            self.stats.unknown_async += 1
            logger.info("Unknown %s", packet.describe())
            return
        try:
            handler(packet)
        except MalformedPacket as e:
            self.stats.malformed += 1
            logger.warning("Dropping %s: %s", packet.describe(), e)

    # ================================
    # Async packet handlers
    # ================================
    def _handle_joint_angles(self, packet: Packet) -> None:
        angles = unpack_joint_angles(packet.payload)
        position = kinematics.solve_angles(angles, self.geometry)
        if position is None:
            self.stats.unreachable += 1
            logger.debug("Joint angles %s have no kinematic solution", angles.as_tuple())
            return
        sample = PositionSample(position, time.monotonic())
        self.latest_position = sample
        for listener in list(self._position_listeners):
            _notify(listener, sample)

    def _handle_force(self, packet: Packet) -> None:
        sample = unpack_force(packet.payload, time.monotonic())
        for listener in list(self._force_listeners):
            _notify(listener, sample)

    def _handle_print(self, packet: Packet) -> None:
        logger.info("MCU print: %s", decode_text(packet.payload))

    def _on_heartbeat_missed(self, err: HeartbeatMissed) -> None:
        for listener in list(self._heartbeat_listeners):
            _notify(listener, err)

    # ================================
    # Info
    # ================================
    def get_info(self) -> dict:
        """
        Get information about the current serial link.

        Returns:
            Dictionary with connection information and counters
        """
        info = {
            "port": self.port,
            "baudrate": self.baudrate,
            "connected": self.is_connected(),
            "running": self.is_running(),
            "pending_replies": len(self.correlator),
            "unmatched_replies": self.correlator.unmatched_replies,
            "heartbeat_misses": self.watchdog.missed,
        }
        info.update(asdict(self.stats))
        return info


def _continuation(on_reply: Callable[[Any], None]) -> Callable[["Future[Any]"], None]:
    """Wrap a reply callback so it only runs for a successful reply."""

    def _done(fut: "Future[Any]") -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        on_reply(fut.result())

    return _done


def _notify(listener: Callable[[Any], None], value: Any) -> None:
    try:
        listener(value)
    except Exception:
        logger.exception("Listener %r failed", listener)
