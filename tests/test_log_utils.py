import logging
from logging.handlers import RotatingFileHandler

import log_utils


def _reset_logger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        try:
            handler.close()
        except Exception:
            pass


def test_setup_logger_writes_to_rotating_file(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "spot_trader.log"
    monkeypatch.setattr(log_utils, "LOG_FILE", str(log_file))

    logger = log_utils.setup_logger("test_log_utils_file")
    try:
        kinds = {type(handler) for handler in logger.handlers}
        assert RotatingFileHandler in kinds
        assert logging.StreamHandler in kinds

        # A second call must not stack more handlers.
        assert log_utils.setup_logger("test_log_utils_file") is logger
        assert len(logger.handlers) == 2

        logger.info("Tick complete")
        for handler in logger.handlers:
            handler.flush()
        assert "Tick complete" in log_file.read_text()
    finally:
        _reset_logger(logger)


def test_read_logs_tail(tmp_path, monkeypatch):
    log_file = tmp_path / "spot_trader.log"
    log_file.write_text("".join(f"line {i}\n" for i in range(5)))
    monkeypatch.setattr(log_utils, "LOG_FILE", str(log_file))

    assert log_utils.read_logs(2) == "line 3\nline 4\n"
    assert log_utils.read_logs(0).count("\n") == 5


def test_read_logs_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "LOG_FILE", str(tmp_path / "absent.log"))
    assert log_utils.read_logs() == ""
