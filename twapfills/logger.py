"""
Structured logging for twapfills.

Provides centralized logging with console and file outputs, plus
run metrics used to report on ingestion health at the end of a run.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import copy
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks per-file and per-day ingestion metrics.
    """

    def __init__(
        self,
        name: str = "twapfills",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        self.metrics = {
            "files_attempted": 0,
            "files_ingested": 0,
            "files_skipped": 0,
            "files_failed": 0,
            "rows_inserted": 0,
            "lines_skipped": 0,
            "errors_by_type": {},
            "days": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"twapfills_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def _day_stats(self, day: str) -> dict:
        if day not in self.metrics["days"]:
            self.metrics["days"][day] = {
                "attempts": 0,
                "ingested": 0,
                "skipped": 0,
                "failed": 0,
            }
        return self.metrics["days"][day]

    def record_file_attempt(self, day: str):
        """Record that a worker started on a file."""
        self.metrics["files_attempted"] += 1
        self._day_stats(day)["attempts"] += 1

    def record_file_ingested(self, day: str, rows_inserted: int, lines_skipped: int = 0):
        """Record a file that was ingested and watermarked."""
        self.metrics["files_ingested"] += 1
        self.metrics["rows_inserted"] += rows_inserted
        self.metrics["lines_skipped"] += lines_skipped
        self._day_stats(day)["ingested"] += 1

    def record_file_skipped(self, day: str):
        """Record a file skipped because its watermark was present."""
        self.metrics["files_skipped"] += 1
        self._day_stats(day)["skipped"] += 1

    def record_file_failure(self, day: str, error_type: str):
        """Record a file that failed and stays retryable."""
        self.metrics["files_failed"] += 1
        self._day_stats(day)["failed"] += 1

        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def get_metrics(self) -> dict:
        """Return current metrics, with a completion rate per day."""
        metrics_copy = self.metrics.copy()
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])
        metrics_copy["days"] = copy.deepcopy(self.metrics["days"])
        for day, stats in metrics_copy["days"].items():
            if stats["attempts"] > 0:
                stats["success_rate"] = round(
                    (stats["ingested"] + stats["skipped"]) / stats["attempts"], 3
                )

        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        attempted = metrics["files_attempted"]
        completed = metrics["files_ingested"] + metrics["files_skipped"]
        overall_rate = 0
        if attempted > 0:
            overall_rate = round(completed / attempted * 100, 1)

        self.info("=== Ingestion Run Metrics ===")
        self.info(f"Files: {completed}/{attempted} completed ({overall_rate}% success)")
        self.info(f"Files ingested: {metrics['files_ingested']}")
        self.info(f"Files skipped (already ingested): {metrics['files_skipped']}")
        self.info(f"Files failed: {metrics['files_failed']}")
        self.info(f"Rows inserted: {metrics['rows_inserted']}")
        self.info(f"Lines skipped: {metrics['lines_skipped']}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "twapfills",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
