import logging
import sys
from pathlib import Path

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LEVELS = ("DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

_COLORS = {
    "DEBUG": "\033[0;37m",
    "INFO": "\033[0;34m",
    "SUCCESS": "\033[0;32m",
    "WARNING": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "CRITICAL": "\033[0;31m",
}
_RESET = "\033[0m"

_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ColorFormatter(logging.Formatter):
    def format(self, record):
        line = super().format(record)
        color = _COLORS.get(record.levelname)
        if not color:
            return line
        return f"{color}{line}{_RESET}"


def setup_logging(level="INFO", log_file=None, color=True):
    root = logging.getLogger()
    root.setLevel(logging.getLevelName(level.upper()) if level.upper() in LEVELS else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColorFormatter(_FORMAT, _DATEFMT) if color else logging.Formatter(_FORMAT, _DATEFMT))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        except OSError as e:
            root.warning(f"Cannot open log file {path}: {e}")
        else:
            file_handler.setFormatter(logging.Formatter(_FORMAT, _DATEFMT))
            root.addHandler(file_handler)


def get_logger(name="portfolio_deploy"):
    return logging.getLogger(name)


def success(logger, message):
    logger.log(SUCCESS, message)
