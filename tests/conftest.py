"""Shared fixtures for the test suite."""

import logging

import pytest

from carddav_sync.utils.logging import AUDIT_LOGGER_NAME, ROOT_LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_package_loggers():
    """Undo setup_logging() side effects so caplog sees package records."""
    loggers = [logging.getLogger(ROOT_LOGGER_NAME), logging.getLogger(AUDIT_LOGGER_NAME)]
    saved = [
        (logger, list(logger.handlers), logger.level, logger.propagate, logger.disabled)
        for logger in loggers
    ]
    yield
    for logger, handlers, level, propagate, disabled in saved:
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)
        logger.propagate = propagate
        logger.disabled = disabled


@pytest.fixture
def no_sleep(monkeypatch):
    """Make bridge retry backoff instantaneous."""
    monkeypatch.setattr("carddav_sync.api.bridge_api.time.sleep", lambda _: None)
