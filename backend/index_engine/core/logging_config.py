"""
Logging configuration for the index engine.

Provides two loggers:
- main_logger: general logging to console (INFO) and a rotating file (DEBUG)
- background_logger: rebalance / reconstruction runs, file (DEBUG) plus
  console for warnings and above
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from index_engine.core.config import settings

# Log directory (relative paths resolve against the backend folder)
_BACKEND_DIR = Path(__file__).parent.parent.parent
LOG_DIR = Path(settings.log_dir)
if not LOG_DIR.is_absolute():
    LOG_DIR = _BACKEND_DIR / LOG_DIR
LOG_FILE = LOG_DIR / "engine_runs.log"
MAIN_LOG_FILE = LOG_DIR / "index_engine.log"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_main_logger = None
_background_logger = None


def _rotating_handler(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB per file
        backupCount=5,
        encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
    return handler


def _console_handler(level: int) -> logging.StreamHandler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    return handler


def setup_logging():
    """Initialize logging configuration. Safe to call more than once."""
    global _main_logger, _background_logger

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    # === Main Logger (console + file) ===
    _main_logger = logging.getLogger("index_engine")
    _main_logger.setLevel(logging.DEBUG)
    _main_logger.propagate = False
    _main_logger.handlers.clear()
    _main_logger.addHandler(_console_handler(logging.INFO))
    _main_logger.addHandler(_rotating_handler(MAIN_LOG_FILE, logging.DEBUG))

    # === Background Logger (file + warnings to console) ===
    _background_logger = logging.getLogger("index_engine.runs")
    _background_logger.setLevel(logging.DEBUG)
    _background_logger.propagate = False
    _background_logger.handlers.clear()
    _background_logger.addHandler(_rotating_handler(LOG_FILE, logging.DEBUG))
    _background_logger.addHandler(_console_handler(logging.WARNING))

    return _main_logger, _background_logger


def get_main_logger() -> logging.Logger:
    """Get the main logger for general operations."""
    if _main_logger is None:
        setup_logging()
    return _main_logger


def get_background_logger() -> logging.Logger:
    """Get the logger for rebalance and reconstruction runs."""
    if _background_logger is None:
        setup_logging()
    return _background_logger


def log_background_start(task_name: str, details: str = ""):
    """Brief console line plus a detailed entry in the run log."""
    main = get_main_logger()
    bg = get_background_logger()

    console_msg = f"[RUN] {task_name} started"
    if details:
        console_msg += f" ({details})"

    main.info(console_msg)
    bg.info(f"=== {task_name} STARTED === {details}")


def log_background_complete(task_name: str, summary: str = ""):
    main = get_main_logger()
    bg = get_background_logger()

    console_msg = f"[RUN] {task_name} completed"
    if summary:
        console_msg += f" - {summary}"

    main.info(console_msg)
    bg.info(f"=== {task_name} COMPLETED === {summary}")


def log_background_error(task_name: str, error: str):
    main = get_main_logger()
    bg = get_background_logger()

    main.warning(f"[RUN] {task_name} failed: {error}")
    bg.error(f"=== {task_name} FAILED === {error}")
