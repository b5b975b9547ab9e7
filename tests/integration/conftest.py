"""Integration test fixtures."""

import pytest

from deltahri.server.game import GameConfig
from deltahri.server.session import Session, SessionConfig


@pytest.fixture
def sim_session():
    """
    Session running against the simulated microcontroller.

    Short waits keep a full interaction cycle well under a second of
    simulated motion.
    """
    config = SessionConfig(
        fake_serial=True,
        display_enabled=False,
        persist_port=False,
        game=GameConfig(skip_timeout=0.2, movement_delay=0.0, seed=1),
    )
    session = Session(config)
    session.start()
    yield session
    session.stop()
