"""Stage-event logging for analysis runs."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminal output."""

    def __init__(self, fmt: str, datefmt: str, colors: Dict[str, str]):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        original = record.levelname
        color = self.colors.get(original, self.colors["RESET"])
        record.levelname = f"{color}{original}{self.colors['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class PipelineLogger:
    """Console and file logging of stage start, completion and failure.

    Parameters
    ----------
    log_dir : str or Path, optional
        Directory for the run log file. Console only when omitted.
    log_level : str
        Logging level name
    log_name : str
        Logger name

    Example
    -------
    >>> logger = PipelineLogger("out/logs", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("qc", "Cell QC")
    >>> logger.log_stage_complete("qc", 1.7)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",
        "INFO": "\033[0;34m",
        "WARNING": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "CRITICAL": "\033[1;31m",
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_level: str = "INFO",
        log_name: str = "heterocell.run",
    ):
        self.log_dir = Path(log_dir) if log_dir else None
        self.log_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = self.log_dir / f"analysis_{stamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False
        self.logger.handlers = []

    def setup(self, console: bool = True) -> None:
        """Attach the file handler (if a log directory was given) and console handler."""
        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(
                logging.Formatter(
                    fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self.logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                ColoredFormatter(
                    fmt="%(asctime)s - %(levelname)s - %(message)s",
                    datefmt="%H:%M:%S",
                    colors=self.COLORS,
                )
            )
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        self.logger.info("-" * 60)
        self.logger.info("Stage %s: %s", stage_id, stage_name)

    def log_stage_complete(self, stage_id: str, duration: float) -> None:
        self.logger.info("Stage %s done in %s", stage_id, self.format_duration(duration))

    def log_stage_error(
        self, stage_id: str, error: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a stage failure, with the failure context when one is available."""
        self.logger.error("Stage %s failed: %s", stage_id, error)
        for key, value in (context or {}).items():
            if value not in (None, {}, ""):
                self.logger.error("  %s: %s", key, value)

    def log_stage_summary(self, stage_id: str, summary: Dict[str, Any]) -> None:
        parts = ", ".join(f"{k}={v}" for k, v in summary.items() if not isinstance(v, (dict, list)))
        self.logger.info("Stage %s summary: %s", stage_id, parts)

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Human-readable duration ("4.2s", "3m 07s", "1h 02m")."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        if seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60):02d}s"
        return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60):02d}m"
