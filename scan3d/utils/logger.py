"""
Logging Utilities
==================
Setup and configuration for pipeline logging.
"""

import logging
import sys
from pathlib import Path
from datetime import datetime


def setup_logger(
    log_file: str | Path = None,
    level: int | str = logging.INFO,
    name: str = "scan3d"
) -> logging.Logger:
    """
    Setup a logger for the pipeline.

    Child loggers (``scan3d.modules.*``) propagate to this one, so a single
    call configures the output of every stage.

    Args:
        log_file: Optional path to log file
        level: Logging level
        name: Logger name

    Returns:
        Configured logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Clear existing handlers, closing them so a replaced log file is released
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


class ProgressLogger:
    """
    Progress listener that writes every stage notification to a logger.

    Register it like any other listener:
    ``pipeline.register_progress_listener(job_id, ProgressLogger(job_id))``.
    """

    def __init__(self, job_id: str, logger: logging.Logger = None):
        """
        Initialize progress logger.

        Args:
            job_id: Job whose progress is reported
            logger: Logger instance
        """
        self.job_id = job_id
        self.logger = logger or logging.getLogger("scan3d")
        self.start_time = datetime.now()
        self.history = []

    def __call__(self, stage: str, progress: int, message: str):
        self.history.append((stage, progress))
        if progress < 0:
            self.logger.error(f"[{self.job_id}] {stage}: {message}")
            self.done()
        else:
            self.logger.info(f"[{self.job_id}] [{progress:3d}%] {stage}: {message}")
            if progress >= 100:
                self.done()

    def done(self):
        """Log completion."""
        elapsed = datetime.now() - self.start_time
        self.logger.info(f"[{self.job_id}] finished in {elapsed.total_seconds():.1f} seconds")
