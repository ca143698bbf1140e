"""Tests for the loguru setup."""

import sys

import pytest
from loguru import logger

from engram.logging_config import setup_logging


@pytest.fixture(autouse=True)
def restore_default_sink():
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_level_filters_messages(capsys):
    setup_logging("warning")
    logger.info("quiet consolidation detail")
    logger.warning("evolution state fell back to defaults")

    err = capsys.readouterr().err
    assert "quiet consolidation detail" not in err
    assert "evolution state fell back to defaults" in err


def test_level_from_environment(capsys, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "error")
    setup_logging()
    logger.warning("queue drained slowly")
    logger.error("merge rolled back")

    err = capsys.readouterr().err
    assert "queue drained slowly" not in err
    assert "merge rolled back" in err
