"""Command-line interface for the delta robot HRI server."""

import argparse
import logging
import signal
import sys
from typing import TextIO

import deltahri.config as cfg
from deltahri.config import TRACE
from deltahri.errors import PortUnavailable
from deltahri.protocol.types import SettlePolicy
from deltahri.server.game import GameConfig
from deltahri.server.session import Session, SessionConfig

logger = logging.getLogger("deltahri.server.cli")

CONSOLE_HELP = """\
commands:
  start | skip        press the start/skip button
  enable | disable    switch the motor drivers
  toggle              toggle the motor drivers
  target X Y Z        offer a target position to the follower
  reset | erase       MCU maintenance commands
  info                print link and game status
  quit                stop and exit"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delta robot HRI control server")
    parser.add_argument("--serial", help="Serial port (e.g., /dev/ttyACM0 or COM5)")
    parser.add_argument(
        "--fake-serial",
        action="store_true",
        default=cfg.FAKE_SERIAL,
        help="Use the simulated microcontroller instead of hardware",
    )
    parser.add_argument(
        "--connect-attempts",
        type=int,
        default=None,
        help="Give up after this many connection attempts (default: retry forever)",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat replies with no pending command as errors",
    )
    parser.add_argument("--display-host", default=cfg.DISPLAY_HOST, help="Display address")
    parser.add_argument(
        "--display-port", type=int, default=cfg.DISPLAY_PORT, help="Display UDP port"
    )
    parser.add_argument(
        "--no-display", action="store_true", help="Do not send game state to the display"
    )
    parser.add_argument(
        "--settle-policy",
        choices=[p.value for p in SettlePolicy],
        default=cfg.SETTLE_POLICY,
        help="End of interaction: skip/timeout only, or also wait for the force to settle",
    )
    parser.add_argument(
        "--settle-timeout",
        type=float,
        default=cfg.SETTLE_TIMEOUT_S,
        help="Bound on the settle wait in seconds (default: unbounded)",
    )
    parser.add_argument(
        "--skip-timeout",
        type=float,
        default=cfg.SKIP_TIMEOUT_S,
        help="Seconds an interaction lasts without a skip",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for target sampling")
    parser.add_argument(
        "--no-console",
        action="store_true",
        help="Do not read commands from stdin; run until SIGTERM/Ctrl-C",
    )
    parser.add_argument(
        "--auto-start", action="store_true", help="Start the game loop on startup"
    )

    # Verbose logging options
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; -v=INFO, -vv=DEBUG, -vvv=TRACE",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Enable quiet logging (WARNING level)",
    )
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set specific log level",
    )
    return parser


def resolve_log_level(args: argparse.Namespace) -> int:
    """
    Precedence:
      1) Explicit --log-level
      2) Verbose / quiet flags
      3) Environment-driven TRACE (DELTAHRI_TRACE=1 via TRACE_ENABLED)
      4) Default INFO
    """
    if args.log_level:
        if args.log_level == "TRACE":
            cfg.TRACE_ENABLED = True
            return TRACE
        return getattr(logging, args.log_level)
    if args.verbose >= 3:
        cfg.TRACE_ENABLED = True
        return TRACE
    if args.verbose >= 2:
        return logging.DEBUG
    if args.verbose == 1:
        return logging.INFO
    if args.quiet:
        return logging.WARNING
    if cfg.TRACE_ENABLED:
        return TRACE
    return getattr(logging, cfg.LOG_LEVEL_DEFAULT)


def build_config(args: argparse.Namespace) -> SessionConfig:
    game = GameConfig(
        skip_timeout=args.skip_timeout,
        settle_policy=SettlePolicy.parse(args.settle_policy),
        settle_timeout=args.settle_timeout,
        seed=args.seed,
    )
    return SessionConfig(
        serial_port=args.serial,
        fake_serial=bool(args.fake_serial),
        connect_attempts=args.connect_attempts,
        strict_replies=bool(args.strict),
        display_enabled=not args.no_display,
        display_host=args.display_host,
        display_port=args.display_port,
        game=game,
    )


def handle_console_line(session: Session, line: str, out: TextIO = sys.stdout) -> bool:
    """
    Execute one console command.

    Returns:
        False when the console should exit.
    """
    parts = line.strip().split()
    if not parts:
        return True
    match parts[0].lower():
        case "start" | "skip" | "press":
            session.press()
        case "enable":
            session.request_enabled(True)
        case "disable":
            session.request_enabled(False)
        case "toggle":
            session.toggle_enabled()
        case "target":
            try:
                x, y, z = (float(v) for v in parts[1:4])
            except ValueError:
                print("usage: target X Y Z", file=out)
                return True
            session.offer_target(x, y, z)
        case "reset" | "erase":
            session.handle_command(parts[0].lower())
        case "info":
            for key, value in session.get_info().items():
                print(f"{key}: {value}", file=out)
        case "quit" | "exit":
            return False
        case "help" | "?":
            print(CONSOLE_HELP, file=out)
        case _:
            print(f"unknown command: {parts[0]} (try 'help')", file=out)
    return True


def run_console(session: Session, stream: TextIO = sys.stdin) -> None:
    for line in stream:
        if session.shutdown_event.is_set():
            break
        if not handle_console_line(session, line):
            break


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the server."""
    args = build_parser().parse_args(argv)
    log_level = resolve_log_level(args)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    third_party_log_level = log_level if log_level >= logging.INFO else logging.INFO
    logging.getLogger("numba").setLevel(third_party_log_level)

    # Pre-compile numba JIT functions so the first telemetry packet is not delayed
    from deltahri.utils.warmup import warmup_jit

    warmup_jit()

    session: Session | None = None

    def handle_sigterm(signum, frame):
        """Handle SIGTERM signal for graceful shutdown."""
        logger.info("Received SIGTERM, shutting down...")
        if session:
            session.stop()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        session = Session(build_config(args))
        session.start()
    except PortUnavailable as e:
        logger.error(f"Robot not available: {e}")
        return 1

    try:
        if args.auto_start:
            session.press()
        if args.no_console:
            while not session.shutdown_event.wait(1.0):
                pass
        else:
            print(CONSOLE_HELP)
            run_console(session)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        session.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
