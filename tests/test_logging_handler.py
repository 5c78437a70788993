"""Tests for logging handlers and context binding."""

import asyncio
import json
import logging

import pytest

from vmrepo.core.logging_handler import (
    ContextFilter,
    InMemoryLogHandler,
    JsonFormatter,
    LoggingContext,
    get_file_log_handler,
    get_log_context,
    get_memory_log_handler,
    setup_logging,
)


@pytest.fixture
def memory_logger():
    """A private logger feeding an InMemoryLogHandler."""
    handler = InMemoryLogHandler(max_records=5)
    logger = logging.getLogger("vmrepo.tests.memory")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    yield logger, handler
    logger.removeHandler(handler)


def test_logging_context_nests_and_resets():
    assert get_log_context() == {}
    with LoggingContext(vm_dir="/vm"):
        with LoggingContext(job="j1"):
            assert get_log_context() == {"vm_dir": "/vm", "job": "j1"}
        assert get_log_context() == {"vm_dir": "/vm"}
    assert get_log_context() == {}


@pytest.mark.asyncio
async def test_logging_context_follows_tasks():
    async def read_context():
        await asyncio.sleep(0)
        return get_log_context()

    with LoggingContext(vm_dir="/vm"):
        context = await asyncio.create_task(read_context())
    assert context == {"vm_dir": "/vm"}


def test_in_memory_handler_filters(memory_logger):
    logger, handler = memory_logger
    logger.info("scanning /vm")
    logger.warning("orphan disk found")
    with LoggingContext(vm_dir="/vm"):
        logger.warning("unused disk found")

    warnings = handler.get_logs(level="warning")
    assert [log["message"] for log in warnings] == ["unused disk found", "orphan disk found"]
    assert warnings[0]["context"] == {"vm_dir": "/vm"}
    assert handler.get_logs(search="SCANNING")[0]["level"] == "INFO"
    assert handler.get_logs(logger="nomatch") == []
    assert len(handler.get_logs(limit=1, offset=1)) == 1


def test_in_memory_handler_is_bounded(memory_logger):
    logger, handler = memory_logger
    for i in range(8):
        logger.info(f"message {i}")

    stats = handler.get_stats()
    assert stats["total"] == 5
    assert stats["by_level"]["INFO"] == 5
    assert handler.get_logs(limit=1)[0]["message"] == "message 7"

    handler.clear()
    assert handler.get_stats()["total"] == 0


def test_json_formatter_includes_context():
    record = logging.LogRecord("vmrepo.x", logging.WARNING, __file__, 1, "merge failed", None, None)
    with LoggingContext(vm_dir="/vm"):
        ContextFilter().filter(record)

    entry = json.loads(JsonFormatter().format(record))
    assert entry["level"] == "WARNING"
    assert entry["message"] == "merge failed"
    assert entry["context"] == {"vm_dir": "/vm"}


def test_file_handler_writes_json(tmp_path):
    log_file = tmp_path / "logs" / "cleanup.log"
    handler = get_file_log_handler(str(log_file), log_format="json")
    logger = logging.getLogger("vmrepo.tests.file")
    logger.propagate = False
    logger.addHandler(handler)
    try:
        logger.warning("unused archive")
    finally:
        logger.removeHandler(handler)
        handler.close()

    entry = json.loads(log_file.read_text().splitlines()[0])
    assert entry["message"] == "unused archive"


def test_setup_logging_does_not_duplicate_handlers(tmp_path):
    logger = logging.getLogger("vmrepo")
    before = list(logger.handlers)
    root_before = list(logging.getLogger().handlers)
    try:
        setup_logging(level="debug", log_file=str(tmp_path / "a.log"))
        count = len(logger.handlers)
        setup_logging(level="debug", log_file=str(tmp_path / "a.log"))
        assert len(logger.handlers) == count
        assert logger.level == logging.DEBUG
        assert logging.getLogger().handlers == root_before
    finally:
        logger.setLevel(logging.NOTSET)
        for handler in logger.handlers[:]:
            if handler not in before:
                logger.removeHandler(handler)
                handler.close()


def test_setup_logging_keeps_recent_records():
    logger = logging.getLogger("vmrepo")
    before = list(logger.handlers)
    try:
        setup_logging(level="info", log_file="")
        setup_logging(level="info", log_file="")
        handler = get_memory_log_handler()
        assert sum(isinstance(h, InMemoryLogHandler) for h in logger.handlers) == 1

        with LoggingContext(vm_dir="/vm"):
            logging.getLogger("vmrepo.services.cleanup.service").info("Cleaning /vm")

        entry = handler.get_logs(search="cleaning")[0]
        assert entry["message"] == "Cleaning /vm"
        assert entry["context"] == {"vm_dir": "/vm"}
    finally:
        logger.setLevel(logging.NOTSET)
        for handler in logger.handlers[:]:
            if handler not in before:
                logger.removeHandler(handler)
                handler.close()
