"""
Logging infrastructure for sanitize runs.

Provides:
- Aligned, millisecond-stamped console output
- Optional file output
- key=value structured suffixes
- Warning/error tracking for the run summary
"""

import logging
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

# Third-party loggers routed through the root handler
EXTERNAL_LOGGERS = ["google", "google.auth", "google.api_core", "grpc", "urllib3"]


class MillisecondsFormatter(logging.Formatter):
    """Formatter that includes milliseconds and aligns log levels."""

    def formatTime(self, record, datefmt=None):  # noqa: N802 - must match parent class method name
        ct = datetime.fromtimestamp(record.created)
        if datefmt:
            return ct.strftime(datefmt) + f",{int(record.msecs):03d}"
        return ct.strftime("%Y-%m-%d %H:%M:%S") + f",{int(record.msecs):03d}"


def _format_string(phase: Optional[str]) -> str:
    if phase:
        return f"%(asctime)s | %(levelname)-8s | {phase} | %(filename)s:%(lineno)d | %(message)s"
    return "%(asctime)s | %(levelname)-8s | %(filename)s:%(lineno)d | %(message)s"


def _with_fields(message: str, fields: dict) -> str:
    if not fields:
        return message
    formatted = " ".join(f"{k}={v}" for k, v in fields.items())
    return f"{message} [{formatted}]"


class RunLogger:
    """
    Operator-facing logger for a sanitize run.
    """

    def __init__(
        self,
        name: str = "fundsweep",
        log_level: str = "INFO",
        log_file: Optional[str] = None,
        log_dir: Optional[Path] = None,
        phase: Optional[str] = None,
    ):
        """
        Initialize the run logger.

        Args:
            name: Logger name
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_file: Optional log file name
            log_dir: Directory for log files (defaults to ./logs)
            phase: Optional tag shown on every line (e.g. "DRY-RUN", "APPLY")
        """
        level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.phase = phase

        if self.logger.handlers:
            self.logger.handlers.clear()

        formatter = MillisecondsFormatter(_format_string(phase), datefmt="%Y-%m-%d %H:%M:%S")

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if log_file:
            log_dir = log_dir or Path.cwd() / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / log_file

            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(logging.DEBUG)  # everything goes to the file
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
            self.info(f"Logging to file: {log_path}")

        configure_global_logging(log_level, phase=phase, formatter=formatter)

        self.errors: list[dict] = []
        self.warnings: list[dict] = []

    def debug(self, message: str, **kwargs):
        self.logger.debug(_with_fields(message, kwargs), stacklevel=2)

    def info(self, message: str, **kwargs):
        self.logger.info(_with_fields(message, kwargs), stacklevel=2)

    def warning(self, message: str, **kwargs):
        """Log warning message and track for reporting."""
        message = _with_fields(message, kwargs)
        self.logger.warning(message, stacklevel=2)
        self.warnings.append({"message": message, "timestamp": datetime.now().isoformat(), "data": kwargs})

    def error(self, message: str, exception: Optional[Exception] = None, **kwargs):
        """Log error message and track for reporting."""
        if exception:
            message = f"{message} | Exception: {exception}"
        message = _with_fields(message, kwargs)
        self.logger.error(message, exc_info=exception is not None, stacklevel=2)
        self.errors.append(
            {
                "message": message,
                "exception": str(exception) if exception else None,
                "timestamp": datetime.now().isoformat(),
                "data": kwargs,
            }
        )

    def log_run_start(self, project_id: str, apply: bool, collections: list[str]):
        self.info("=" * 60)
        self.info(
            "Sanitize run started",
            project=project_id,
            mode="APPLY" if apply else "DRY-RUN",
            collections=len(collections),
        )
        self.info("=" * 60)

    def log_run_complete(self, state: str, planned: int, committed: int, issues: int, duration_seconds: float):
        self.info("=" * 60)
        self.info(
            "Sanitize run finished",
            state=state,
            planned=planned,
            committed=committed,
            issues=issues,
            duration_seconds=round(duration_seconds, 2),
        )
        self.info("=" * 60)

    @contextmanager
    def time_step(self, step: str, **kwargs):
        """
        Time and log one run step.

        Usage:
            with logger.time_step("scan", collections=8):
                ...
        """
        start_time = datetime.now()
        self.debug(f"Starting {step}", **kwargs)
        try:
            yield
        except Exception as e:
            duration = (datetime.now() - start_time).total_seconds()
            self.error(f"Failed {step}", exception=e, duration_seconds=round(duration, 2), **kwargs)
            raise
        duration = (datetime.now() - start_time).total_seconds()
        self.info(f"Completed {step}", duration_seconds=round(duration, 2), **kwargs)

    def get_error_summary(self) -> dict:
        return {
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
            "errors": self.errors,
            "warnings": self.warnings,
        }


def configure_global_logging(
    log_level: str = "INFO",
    phase: Optional[str] = None,
    formatter: Optional[logging.Formatter] = None,
):
    """
    Configure the root logger and third-party loggers with the unified format.

    Args:
        log_level: Logging level to apply globally
        phase: Optional tag shown on every line
        formatter: Formatter to reuse (built from phase when omitted)
    """
    level = getattr(logging, log_level.upper())
    formatter = formatter or MillisecondsFormatter(_format_string(phase), datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    root_handler = logging.StreamHandler(sys.stdout)
    root_handler.setLevel(level)
    root_handler.setFormatter(formatter)
    root_logger.addHandler(root_handler)

    for lib_name in EXTERNAL_LOGGERS:
        lib_logger = logging.getLogger(lib_name)
        lib_logger.handlers.clear()
        lib_logger.propagate = True
        # google/grpc are chatty at DEBUG
        lib_logger.setLevel(max(level, logging.INFO))
