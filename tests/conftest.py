import pytest
from loguru import logger


@pytest.fixture
def caplog_loguru():
    """Collect loguru messages emitted during a test."""
    messages = []
    handler_id = logger.add(lambda msg: messages.append(msg.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
