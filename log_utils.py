import logging
from logging.handlers import RotatingFileHandler
import os

# Log location can be redirected per deployment; the default keeps logs next
# to the repository so a fresh checkout runs without extra setup.
_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
LOG_FILE = os.getenv("LOG_FILE", os.path.join(_REPO_ROOT, "logs", "spot_trader.log"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Logs are written to both console and a rotating file to persist
    information for debugging. Subsequent calls with the same name
    return the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
        # Rotating file handler keeps last 5 logs of ~1MB each
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError:
        # Read-only filesystems still get console output.
        pass
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


def read_logs(tail: int = 100) -> str:
    """Return the last ``tail`` lines from the log file.

    Diagnostic helper for inspecting a running deployment without shell
    access to the log directory.  If the log file does not exist, an empty
    string is returned.

    Parameters
    ----------
    tail : int, optional
        The number of lines from the end of the log to return. Defaults
        to 100.

    Returns
    -------
    str
        The concatenated log lines.
    """
    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r") as f:
        lines = f.readlines()
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])


__all__ = ["LOG_FILE", "setup_logger", "read_logs"]
