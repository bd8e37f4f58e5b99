"""Unit tests for logging configuration."""

import logging

import pytest

from matchday.logging_config import NOISY_LOGGERS, configure_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    matchday_level = logging.getLogger("matchday").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("matchday").setLevel(matchday_level)


def test_level_from_settings(test_settings, monkeypatch):
    settings = test_settings.model_copy(update={"log_level": "WARNING"})
    monkeypatch.setattr("matchday.logging_config.get_settings", lambda: settings)

    configure_logging()

    assert logging.getLogger("matchday").level == logging.WARNING
    assert len(logging.getLogger().handlers) == 1


def test_override_and_noisy_loggers():
    configure_logging("DEBUG")

    assert logging.getLogger("matchday").level == logging.DEBUG
    assert logging.getLogger("sqlalchemy.engine").level == logging.ERROR
    assert all(logging.getLogger(name).level >= logging.WARNING for name in NOISY_LOGGERS)
