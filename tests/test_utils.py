"""Tests for logging setup."""

import logging

from resumable_chat.utils import LOG_FILE_NAME, setup_logging


def test_setup_logging_writes_file_once(tmp_path):
    root = logging.getLogger()
    level = root.level
    configured = getattr(root, "_resumable_chat_configured", False)
    root._resumable_chat_configured = False
    before = list(root.handlers)
    try:
        log_file = setup_logging(str(tmp_path / "logs"), logging.INFO)
        setup_logging(str(tmp_path / "logs"), logging.DEBUG)
        added = [handler for handler in root.handlers if handler not in before]

        assert log_file == tmp_path / "logs" / LOG_FILE_NAME
        assert len(added) == 2
        assert root.level == logging.DEBUG

        logging.getLogger("resumable_chat.test").info("hello log")
        for handler in added:
            handler.flush()
        assert "hello log" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)
        root._resumable_chat_configured = configured
