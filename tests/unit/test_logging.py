"""Tests for logging.py - root logger setup."""

import logging

import pytest

from torbox_rules.logging import LOG_FORMAT_DETAILED, LOG_FORMAT_SIMPLE, get_logger, setup_logging


@pytest.fixture
def mock_config(mocker, tmp_path):
    config = mocker.MagicMock()
    config.get_log_level.return_value = 'WARNING'
    config.get_log_file.return_value = tmp_path / 'logs' / 'torbox-rules.log'
    return config


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestSetupLogging:

    def test_creates_log_directory_and_file_handler(self, mock_config, tmp_path):
        setup_logging(mock_config)

        root = logging.getLogger()
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        assert (tmp_path / 'logs').is_dir()
        assert len(file_handlers) == 1
        assert file_handlers[0].level == logging.DEBUG

    def test_console_honours_level(self, mock_config):
        setup_logging(mock_config)

        root = logging.getLogger()
        console = [h for h in root.handlers
                   if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)]
        assert console[0].level == logging.WARNING
        assert root.level == logging.DEBUG

    def test_trace_mode_uses_detailed_format(self, mock_config):
        setup_logging(mock_config, trace_mode=True)
        assert logging.getLogger().handlers[0].formatter._fmt == LOG_FORMAT_DETAILED

    def test_simple_format_by_default(self, mock_config):
        setup_logging(mock_config)
        assert logging.getLogger().handlers[0].formatter._fmt == LOG_FORMAT_SIMPLE

    def test_repeated_setup_does_not_duplicate_handlers(self, mock_config):
        setup_logging(mock_config)
        setup_logging(mock_config)
        assert len(logging.getLogger().handlers) == 2

    def test_unwritable_log_file_falls_back_to_console(self, mock_config, tmp_path, capsys):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        mock_config.get_log_file.return_value = blocker / 'torbox-rules.log'

        setup_logging(mock_config)

        root = logging.getLogger()
        assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
        assert 'Continuing with console logging only' in capsys.readouterr().err


def test_get_logger_returns_named_logger():
    assert get_logger('torbox_rules.test').name == 'torbox_rules.test'
