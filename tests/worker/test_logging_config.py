"""Tests for structlog configuration."""

import pytest
import structlog

from agentfleet.worker.logging_config import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_level_filtering(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("WARNING", json_output=True)
    logger = structlog.get_logger()

    logger.info("hidden_event")
    logger.warning("shown_event", agent_id="a1")

    err = capsys.readouterr().err
    assert "hidden_event" not in err
    assert '"event": "shown_event"' in err
    assert '"agent_id": "a1"' in err


def test_invalid_level() -> None:
    with pytest.raises(ValueError):
        configure_logging("LOUD")
