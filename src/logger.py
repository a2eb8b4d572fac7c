"""
Centralized logging configuration for Stock Tracker.

This module provides the logging system shared by every component:
- Structured JSON logging for easy parsing and analysis
- Automatic file rotation (prevents log files from growing indefinitely)
- Configurable log levels (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- Automatic cleanup of old logs (retention policy)
- Both file and console output
- Context-aware logging (source_label, run_id)

Ingestion runs can take minutes on multi-gigabyte files, so every log line
written by the worker thread carries the run id and the source label of the
upload it belongs to.

Log file location: [Logging] LogDir from config.ini, default ~/.stock_tracker/logs
Log file format: YYYY-MM-DD.log

Example log entry (JSON format):
    {"timestamp": "2026-10-19T14:30:45.123", "level": "INFO", "tool": "stock_tracker",
     "source_label": "SOH_2026-10-19.xlsx", "run_id": "3f2a9c1e", "module": "ingestion_worker",
     "function": "_run", "line": 212, "message": "Ingestion complete: 48213 records"}
"""

import logging
import json
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
import configparser
from contextvars import ContextVar


# Context variables for structured logging
_source_label: ContextVar[Optional[str]] = ContextVar('source_label', default=None)
_run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)

CONFIG_FILE_ENV = 'STOCK_TRACKER_CONFIG'


class StructuredJSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Outputs log records as JSON with fields:
    - timestamp: ISO 8601 format with milliseconds
    - level: Log level
    - tool: Always "stock_tracker"
    - source_label: Upload currently being processed (if set)
    - run_id: Ingestion run identifier (if set)
    - module, function, line: Origin of the record
    - message: Log message
    - exc_info: Exception information (if present)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'tool': 'stock_tracker',
            'source_label': _source_label.get(),
            'run_id': _run_id.get(),
            'module': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False, default=str)


class AppLogger:
    """
    Centralized application logger with file rotation and cleanup.

    Logging is configured once, on the first get_logger() call, regardless of
    how many modules import and use the logger.

    The logging system is configured from config.ini with these settings:
        [Logging]
        LogLevel = INFO
        LogDir = /var/log/stock_tracker
        MaxLogSizeMB = 10
        LogRetentionDays = 30

    Attributes:
        _initialized: Whether logging has been configured (class-level)
    """

    _initialized: bool = False

    @classmethod
    def get_logger(cls, name: str = 'StockTracker') -> logging.Logger:
        """
        Get or create application logger with lazy initialization.

        Usage in modules:
            from logger import get_logger
            logger = get_logger(__name__)
            logger.info("Starting operation")

        Args:
            name: Logger name, typically the module name (__name__)

        Returns:
            Configured logger instance for the specified name
        """
        if not cls._initialized:
            cls._setup_logging()
            cls._initialized = True

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls):
        """
        Setup logging configuration from config.ini.

        Configures:
        1. Log directory and daily file path
        2. Log level (from config or default to INFO)
        3. JSON file handler with rotation
        4. Human-readable console handler
        5. Old log cleanup
        """
        config = cls._load_config()

        # === LOG DIRECTORY SETUP ===
        default_dir = Path(os.path.expanduser("~")) / ".stock_tracker" / "logs"
        log_dir = Path(os.path.expanduser(config.get('Logging', 'LogDir', fallback=str(default_dir))))

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Read-only home directories (CI, containers) fall back to the temp dir
            log_dir = Path(tempfile.gettempdir()) / "stock_tracker" / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            print(f"Warning: Could not create log directory. Using: {log_dir}. Error: {e}")

        log_file = log_dir / f"{datetime.now():%Y-%m-%d}.log"

        # === LOG LEVEL CONFIGURATION ===
        log_level_str = config.get('Logging', 'LogLevel', fallback='INFO')
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        max_log_size = config.getint('Logging', 'MaxLogSizeMB', fallback=10) * 1024 * 1024

        # === LOG FORMATTERS ===
        json_formatter = StructuredJSONFormatter()

        # Format: timestamp | module | level | function:line | message
        console_formatter = logging.Formatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # === FILE HANDLER ===
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(json_formatter)

        # === CONSOLE HANDLER ===
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

        # === CLEANUP OLD LOGS ===
        retention_days = config.getint('Logging', 'LogRetentionDays', fallback=30)
        cls._cleanup_old_logs(log_dir, retention_days)

        logger = logging.getLogger('StockTracker')
        logger.info("=" * 80)
        logger.info("Stock Tracker Started")
        logger.info(f"Log Level: {log_level_str}")
        logger.info(f"Log File: {log_file}")
        logger.info("=" * 80)

    @staticmethod
    def _load_config() -> configparser.ConfigParser:
        """
        Load logging configuration from config.ini.

        The file is looked up at $STOCK_TRACKER_CONFIG, then ./config.ini.
        A missing file is not an error; defaults are used.

        Returns:
            ConfigParser object with loaded configuration
        """
        config = configparser.ConfigParser()
        config_path = Path(os.environ.get(CONFIG_FILE_ENV, 'config.ini'))

        if config_path.exists():
            config.read(config_path, encoding='utf-8')

        return config

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Delete log files older than the retention period.

        Args:
            log_dir: Directory containing log files
            retention_days: Number of days to keep logs
                          0 or negative = disable cleanup
        """
        if retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            for log_file in log_dir.glob("*.log*"):
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
                if file_mtime < cutoff_date:
                    log_file.unlink()
                    logging.getLogger('StockTracker').debug(f"Deleted old log: {log_file.name}")

        except OSError as e:
            # Non-fatal: a log file held open by another process must not stop startup
            logging.getLogger('StockTracker').warning(f"Failed to cleanup old logs: {e}")


def get_logger(name: str = 'StockTracker') -> logging.Logger:
    """
    Get application logger.

    Example:
        >>> from logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Starting ingestion")
    """
    return AppLogger.get_logger(name)


def set_source_context(source_label: Optional[str]) -> None:
    """
    Set the upload source label included in subsequent log entries.

    Context variables do not propagate into new threads, so the ingestion
    worker sets its own context when it starts.

    Example:
        >>> set_source_context("SOH_2026-10-19.xlsx")
        >>> logger.info("Reconciling")  # Will include source_label
    """
    _source_label.set(source_label)


def set_run_context(run_id: Optional[str]) -> None:
    """Set the ingestion run id included in subsequent log entries."""
    _run_id.set(run_id)


def clear_logging_context() -> None:
    """Clear all logging context (source_label, run_id)."""
    _source_label.set(None)
    _run_id.set(None)
