import logging
from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Undo any configure_logging() a test (or CLI command) applied."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
