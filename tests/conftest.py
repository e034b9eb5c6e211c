"""
Shared pytest fixtures.
"""

import logging

import pytest

from gcontact_import.utils.logging import DEDUP_LOGGER_NAME, ROOT_LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_package_loggers():
    """Undo setup_logging/setup_dedup_logger so caplog keeps working."""
    yield
    for name in (ROOT_LOGGER_NAME, DEDUP_LOGGER_NAME):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(logging.NOTSET)
