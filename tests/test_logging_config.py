import json
import logging
import sys

import pytest

from a2a_runtime.logging_config import (
    JsonFormatter,
    TaskContextFilter,
    configure_logging,
    current_task_id,
    task_log_context,
)


def make_record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("a2a_runtime.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestJsonFormatter:
    def test_core_fields_and_extras(self):
        record = make_record(task_id="task-1", attempt=2)

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "a2a_runtime.test"
        assert payload["message"] == "hello world"
        assert payload["task_id"] == "task-1"
        assert payload["attempt"] == 2
        assert "msg" not in payload
        assert "args" not in payload

    def test_unserializable_extra_uses_repr(self):
        payload = json.loads(JsonFormatter().format(make_record(client=object())))
        assert payload["client"].startswith("<object object")

    def test_exception_info(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]


class TestTaskContext:
    def test_filter_adds_running_task_id(self):
        record = make_record()
        with task_log_context("task-7"):
            assert TaskContextFilter().filter(record) is True
        assert record.task_id == "task-7"
        assert current_task_id.get() is None

    def test_explicit_task_id_wins(self):
        record = make_record(task_id="task-1")
        with task_log_context("task-7"):
            TaskContextFilter().filter(record)
        assert record.task_id == "task-1"

    def test_no_context_leaves_record_alone(self):
        record = make_record()
        TaskContextFilter().filter(record)
        assert not hasattr(record, "task_id")


def test_configure_logging_writes_json_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "runtime.log"

    configure_logging("debug", str(log_file))
    with task_log_context("task-9"):
        logging.getLogger("a2a_runtime.test").info("written", extra={"step": 1})
    for handler in restore_root_logger.handlers:
        handler.flush()

    assert restore_root_logger.level == logging.DEBUG
    assert len(restore_root_logger.handlers) == 2
    assert logging.getLogger("httpx").level == logging.WARNING

    lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert lines[-1]["message"] == "written"
    assert lines[-1]["task_id"] == "task-9"
    assert lines[-1]["step"] == 1
