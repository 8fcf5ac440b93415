"""Tests for logging setup."""
import logging

from model_server.utils.logging import QUIET_LOGGERS, setup_logging


class TestSetupLogging:

    def test_log_file_named_after_server(self, tmp_path):
        log_file = setup_logging(tmp_path / 'logs')
        assert log_file == tmp_path / 'logs' / 'model_server.log'
        assert log_file.parent.is_dir()

    def test_third_party_loggers_quiet_unless_debug(self, tmp_path):
        setup_logging(tmp_path)
        assert all(logging.getLogger(name).level == logging.WARNING for name in QUIET_LOGGERS)

        setup_logging(tmp_path, debug=True)
        assert all(logging.getLogger(name).level == logging.DEBUG for name in QUIET_LOGGERS)
