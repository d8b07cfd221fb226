"""Tests for fp_installer.core.logging_config — setup_logging."""

from __future__ import annotations

import logging

import pytest
from rich.logging import RichHandler

from fp_installer.core.logging_config import _parse_level, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestParseLevel:
    @pytest.mark.parametrize("raw,expected", [
        (None, logging.WARNING),
        ("", logging.WARNING),
        ("debug", logging.DEBUG),
        ("INFO", logging.INFO),
        ("chatty", logging.WARNING),
    ])
    def test_parse(self, raw, expected):
        assert _parse_level(raw) == expected


class TestSetupLogging:
    def test_console_only(self, monkeypatch):
        monkeypatch.delenv("FP_INSTALLER_LOG_LEVEL", raising=False)
        setup_logging()
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], RichHandler)
        assert root.level == logging.WARNING

    def test_env_level(self, monkeypatch):
        monkeypatch.setenv("FP_INSTALLER_LOG_LEVEL", "info")
        setup_logging()
        assert logging.getLogger().handlers[0].level == logging.INFO

    def test_log_file_gets_debug(self, tmp_path):
        log_file = tmp_path / "logs" / "fp-installer.log"
        setup_logging(log_file=log_file)

        logging.getLogger("fp_installer.test").debug("probe detail")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert logging.getLogger().level == logging.DEBUG
        assert "probe detail" in log_file.read_text()

    def test_unwritable_log_file_is_not_fatal(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        setup_logging(log_file=blocker / "sub" / "x.log")
        assert len(logging.getLogger().handlers) == 1

    def test_second_setup_closes_previous_file(self, tmp_path):
        setup_logging(log_file=tmp_path / "first.log")
        first = next(
            h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
        )

        setup_logging(debug=True, log_file=tmp_path / "second.log")

        assert first.stream is None
        assert first not in logging.getLogger().handlers
