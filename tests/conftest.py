from __future__ import annotations

import logging
import os
from typing import Iterator

import pytest

import streamledger.db.session as db_session_module
from streamledger.core.config import get_settings


@pytest.fixture(autouse=True)
def isolated_settings() -> Iterator[None]:
    yield
    for key in [name for name in os.environ if name.startswith("STREAMLEDGER_")]:
        del os.environ[key]
    get_settings.cache_clear()
    db_session_module.dispose_engine()


@pytest.fixture
def restore_root_logging() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
