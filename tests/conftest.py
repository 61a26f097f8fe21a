"""Global pytest configuration and fixtures."""

import logging

import pytest

from panelmigrate.utils.index import LOGGER_NAME
from tests.utils import build_host, make_config


@pytest.fixture(autouse=True)
def reset_logger():
    logger = logging.getLogger(LOGGER_NAME)
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True


@pytest.fixture
def host_root(tmp_path):
    return build_host(tmp_path / "host")


@pytest.fixture
def config(tmp_path, host_root):
    return make_config(tmp_path, host_root)
