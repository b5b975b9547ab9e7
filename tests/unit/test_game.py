"""
Unit tests for the interaction state machine.
"""

import itertools
import math
import threading
import time
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from deltahri.protocol.types import (
    Cancel,
    ForceSample,
    ImpedanceSetting,
    Phase,
    Position,
    PositionSample,
    SettlePolicy,
)
from deltahri.server.game import GameConfig, GameLoop, squared_velocity


def _done_future():
    fut: Future = Future()
    fut.set_result(None)
    return fut


class RecordingLink:
    """Robot link stand-in; optionally teleports the robot to each target."""

    def __init__(self, teleport: bool = True):
        self.teleport = teleport
        self.loop: GameLoop | None = None
        self.targets: list[Position] = []
        self.impedances: list[ImpedanceSetting] = []
        self._clock = itertools.count()

    def sample(self, position: Position) -> PositionSample:
        return PositionSample(position, next(self._clock) * 0.1)

    def set_target_position(self, x, y, z):
        target = Position(x, y, z)
        self.targets.append(target)
        if self.teleport and self.loop is not None:
            self.loop.on_position(self.sample(target))
            self.loop.on_position(self.sample(target))
        return _done_future()

    def set_impedance(self, setting):
        self.impedances.append(setting)
        return _done_future()


def _make_loop(teleport=True, display=None, **overrides):
    params = dict(skip_timeout=0.05, movement_delay=0.0, seed=7)
    params.update(overrides)
    link = RecordingLink(teleport=teleport)
    loop = GameLoop(link, display=display, config=GameConfig(**params))
    link.loop = loop
    return loop, link


def _start(loop, link, at=Position(0.0, 0.0, 0.85)):
    assert loop.start() is True
    loop.on_position(link.sample(at))


class TestSquaredVelocity:
    def test_scaled_by_elapsed_time(self):
        a = PositionSample(Position(0, 0, 0), 1.0)
        b = PositionSample(Position(0.1, 0, 0), 1.5)
        assert squared_velocity(a, b) == pytest.approx(0.04)

    def test_same_timestamp(self):
        a = PositionSample(Position(0, 0, 0), 1.0)
        assert squared_velocity(a, PositionSample(Position(0, 0, 0), 1.0)) == 0.0
        assert math.isinf(squared_velocity(a, PositionSample(Position(0, 0, 0.1), 1.0)))


class TestMoveToPoint:
    """Convergence against synthetic telemetry."""

    def test_linear_approach_then_hold(self):
        loop, link = _make_loop(teleport=False)
        target = Position(0.0, 0.0, 0.8)
        approach = [Position(0.0, 0.0, 0.5 + 0.05 * i) for i in range(7)]
        for i, pos in enumerate(approach):
            loop._telemetry.put(PositionSample(pos, i * 0.1))
        arrival = approach[-1]
        for i in range(3):
            loop._telemetry.put(PositionSample(arrival, 0.7 + i * 0.1))

        assert loop.move_to_point(target) is True
        # Arrival sample is still moving; the first hold sample converges
        assert loop._telemetry.qsize() == 2
        assert link.targets == [target]

    def test_not_converged_while_moving_through_target(self):
        loop, _ = _make_loop(teleport=False)
        target = Position(0.0, 0.0, 0.8)
        # Passes within the distance threshold at 0.05 m per 0.1 s
        for i, z in enumerate([0.7, 0.75, 0.8, 0.85, 0.9]):
            loop._telemetry.put(PositionSample(Position(0.0, 0.0, z), i * 0.1))
        loop._telemetry.put(Cancel())
        assert loop.move_to_point(target) is False

    def test_not_converged_while_still_but_far(self):
        loop, _ = _make_loop(teleport=False)
        for i in range(5):
            loop._telemetry.put(PositionSample(Position(0.1, 0.0, 0.8), i * 0.1))
        loop._telemetry.put(Cancel())
        assert loop.move_to_point(Position(0.0, 0.0, 0.8)) is False

    def test_cancel_returns_immediately(self):
        loop, _ = _make_loop(teleport=False)
        loop._telemetry.put(Cancel())
        assert loop.move_to_point(Position(0.0, 0.0, 0.8)) is False


class TestRandomPoint:
    def test_inside_workspace(self):
        loop, _ = _make_loop()
        radius = loop.config.workspace.radius
        for _ in range(500):
            x, y = loop.random_point()
            assert math.hypot(x, y) <= radius + 1e-12

    def test_seeded(self):
        a, _ = _make_loop(seed=3)
        b, _ = _make_loop(seed=3)
        assert [a.random_point() for _ in range(5)] == [b.random_point() for _ in range(5)]


class TestCycle:
    """Full phase sequence against a teleporting robot."""

    def test_impedance_and_display_sequence(self, wait_until):
        display = MagicMock()
        loop, link = _make_loop(display=display)
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.cycles >= 4, timeout=5)
        finally:
            loop.stop()

        free = loop.config.free_impedance
        profiles = loop.config.impedances
        # Free profile before every reposition, then the next profile in turn
        assert link.impedances[:8] == [
            free, profiles[0], free, profiles[1], free, profiles[2], free, profiles[0]
        ]
        indices = [c.args[0] for c in display.send_game_state.call_args_list]
        assert indices[:4] == [0, 1, 2, 0]
        assert indices[-1] == -1

    def test_motion_heights(self, wait_until):
        loop, link = _make_loop()
        ws = loop.config.workspace
        _start(loop, link, at=Position(0.05, -0.02, 0.85))
        try:
            assert wait_until(lambda: loop.cycles >= 1, timeout=5)
        finally:
            loop.stop()

        descend, randomize, approach = link.targets[:3]
        assert (descend.x, descend.y, descend.z) == (0.05, -0.02, ws.z_low)
        assert randomize.z == ws.z_low
        assert (approach.x, approach.y) == (randomize.x, randomize.y)
        assert approach.z == ws.z_interaction

    def test_approach_height_follows_profile(self, wait_until):
        loop, link = _make_loop(interaction_heights=(0.9, 0.88, 0.86))
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.cycles >= 4, timeout=5)
        finally:
            loop.stop()

        approaches = link.targets[2::3][:4]
        assert [p.z for p in approaches] == [0.9, 0.88, 0.86, 0.9]

    def test_phase_listeners(self, wait_until):
        loop, link = _make_loop()
        events = []
        loop.add_phase_listener(lambda phase, interactable: events.append((phase, interactable)))
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.cycles >= 1, timeout=5)
        finally:
            loop.stop()

        phases = [p for p, _ in events]
        assert phases[:5] == [Phase.DESCEND, Phase.RANDOMIZE, Phase.ENGAGE, Phase.ENGAGE, Phase.APPROACH]
        assert (Phase.WAIT, True) in events
        assert (Phase.WAIT, False) in events
        assert events[-1] == (Phase.STOPPED, False)
        assert loop.interactable is False

    def test_telemetry_ignored_when_not_running(self):
        loop, link = _make_loop()
        loop.on_position(link.sample(Position(0, 0, 0.8)))
        assert loop._telemetry.qsize() == 0


class TestControl:
    def test_start_while_running_skips_wait(self, wait_until):
        loop, link = _make_loop(skip_timeout=30.0)
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.phase is Phase.WAIT, timeout=5)
            assert loop.start() is False
            assert wait_until(lambda: loop.cycles >= 1, timeout=2)
        finally:
            loop.stop()

    def test_skip_outside_wait_ignored(self):
        loop, _ = _make_loop()
        loop.skip()
        assert not loop._skip.is_set()

    def test_stop_while_moving(self, wait_until):
        loop, link = _make_loop(teleport=False)
        _start(loop, link)
        assert wait_until(lambda: loop.phase is Phase.DESCEND)
        t0 = time.monotonic()
        loop.stop(timeout=2.0)
        assert time.monotonic() - t0 < 1.0
        assert not loop.is_running()
        assert loop.phase is Phase.STOPPED

    def test_stop_while_waiting(self, wait_until):
        loop, link = _make_loop(skip_timeout=30.0)
        _start(loop, link)
        assert wait_until(lambda: loop.phase is Phase.WAIT, timeout=5)
        t0 = time.monotonic()
        loop.stop(timeout=2.0)
        assert time.monotonic() - t0 < 1.0
        assert not loop.is_running()

    def test_stop_before_first_sample(self):
        loop, _ = _make_loop(teleport=False)
        assert loop.start() is True
        loop.stop(timeout=2.0)
        assert not loop.is_running()

    def test_no_thread_left_after_stop(self, wait_until):
        loop, link = _make_loop()
        _start(loop, link)
        assert wait_until(lambda: loop.cycles >= 1, timeout=5)
        loop.stop()
        assert not any(t.name == "deltahri-game" for t in threading.enumerate())

    def test_restart_after_stop(self, wait_until):
        loop, link = _make_loop()
        _start(loop, link)
        loop.stop()
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.cycles >= 1, timeout=5)
        finally:
            loop.stop()

    def test_stop_when_never_started(self):
        display = MagicMock()
        loop, _ = _make_loop(display=display)
        loop.stop()
        display.send_game_state.assert_not_called()
        assert loop.phase is Phase.IDLE


class TestSettlePolicy:
    def test_wait_policy_needs_low_force(self, wait_until):
        loop, link = _make_loop(
            skip_timeout=0.01,
            settle_policy=SettlePolicy.WAIT,
            settle_samples=3,
            settle_force=0.5,
        )
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.phase is Phase.WAIT, timeout=5)
            time.sleep(0.2)
            assert loop.cycles == 0

            # A strong push resets the quiet count
            loop.on_force(ForceSample(0.1, 0.0, 0.0, 0.0))
            loop.on_force(ForceSample(0.1, 0.0, 0.0, 0.0))
            loop.on_force(ForceSample(5.0, 0.0, 0.0, 0.0))
            time.sleep(0.05)
            assert loop.cycles == 0

            for _ in range(3):
                loop.on_force(ForceSample(0.0, 0.1, 0.0, 0.0))
            assert wait_until(lambda: loop.cycles >= 1, timeout=2)
        finally:
            loop.stop()

    def test_bounded_settle_wait(self, wait_until):
        loop, link = _make_loop(
            skip_timeout=0.01, settle_policy="wait", settle_timeout=0.05
        )
        _start(loop, link)
        try:
            assert wait_until(lambda: loop.cycles >= 2, timeout=5)
        finally:
            loop.stop()

    def test_stale_signals_do_not_end_next_wait(self):
        loop, _ = _make_loop(
            skip_timeout=0.2, settle_policy=SettlePolicy.WAIT, settle_timeout=0.2
        )
        # Raised between two Wait phases
        loop._skip.set()
        loop._settled.set()
        t0 = time.monotonic()
        loop._wait_for_interaction()
        assert time.monotonic() - t0 >= 0.35
        assert loop.interactable is False

    def test_force_ignored_outside_wait(self):
        loop, _ = _make_loop(settle_samples=1)
        loop.on_force(ForceSample(0.0, 0.0, 0.0, 0.0))
        assert not loop._settled.is_set()


class TestConfig:
    def test_defaults(self):
        cfg = GameConfig()
        assert [s.as_tuple() for s in cfg.impedances] == [
            (10.0, 60.0, 0.0),
            (0.0, 50.0, 500.0),
            (10.0, 40.0, 150.0),
        ]
        assert cfg.free_impedance.as_tuple() == (0.0, 0.0, 0.0)
        assert cfg.dist_thresh_square == 0.0025
        assert cfg.velocity_thresh_square == 0.0001

    def test_interaction_heights_default_to_workspace(self):
        cfg = GameConfig()
        assert cfg.interaction_heights == (cfg.workspace.z_interaction,) * 3

    def test_interaction_heights_must_match_profiles(self):
        with pytest.raises(ValueError, match="2 interaction heights"):
            GameConfig(interaction_heights=(0.9, 0.88))

    def test_empty_impedances_rejected(self):
        with pytest.raises(ValueError):
            GameConfig(impedances=())
