from pathlib import Path

import pytest
from loguru import logger

from skyfleet.logging import LogConfig, _format_context, setup_logging, teardown_logging

pytestmark = [pytest.mark.unit]


class TestFormatContext:
    def test_known_keys(self):
        record = {"extra": {"component": "arbiter", "node": "linux (i-1)", "other": 1}}
        assert _format_context(record) == " [component=arbiter node=linux (i-1)]"

    def test_empty(self):
        assert _format_context({"extra": {}}) == ""


class TestSetup:
    def test_file_sink(self, tmp_path: Path):
        log_file = tmp_path / "logs" / "skyfleet.log"
        handlers = setup_logging(LogConfig(file=str(log_file)))
        try:
            assert len(handlers) == 1
            logger.bind(component="test").info("hello from skyfleet")
        finally:
            teardown_logging(handlers)
        assert log_file.parent.is_dir()

    def test_console_and_no_file(self):
        handlers = setup_logging(LogConfig(file=None, console=True))
        teardown_logging(handlers)
        assert len(handlers) == 1
