"""
Logging for HierarchicalMVS

Every module logs through a child of the ``HierarchicalMVS`` logger
(``HierarchicalMVS.workspace``, ``HierarchicalMVS.io`` ...). Handlers live on
that root only and are configured from an ``MVSConfig``. Per-problem messages
go through ``problem_logger`` so each line carries the reference image id.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "HierarchicalMVS"

# [2025-10-31 10:15:30] [INFO] [HierarchicalMVS.workspace] [problem 3] Message
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(level: str = "INFO", log_file: Optional[str] = None,
                 console: bool = True, force: bool = False) -> logging.Logger:
    """
    Attach console and/or file handlers to the package logger.

    A logger that already has handlers is left alone unless ``force`` is set,
    so several pipelines in one process share one configuration.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if logger.handlers and not force:
        return logger

    logger.setLevel(getattr(logging, level.upper()))
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def configure_from_config(config, force: bool = False) -> logging.Logger:
    """Level from ``config.verbose`` (DEBUG or INFO), file from ``config.log_file``"""
    return setup_logger(level="DEBUG" if config.verbose else "INFO",
                        log_file=config.log_file, force=force)


def get_logger(name: str) -> logging.Logger:
    """Child logger for a module, e.g. ``get_logger("workspace")``"""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class ProblemLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the problem's reference image id"""

    def process(self, msg, kwargs):
        return f"[problem {self.extra['ref_image_id']}] {msg}", kwargs


def problem_logger(name: str, ref_image_id: int) -> ProblemLogAdapter:
    return ProblemLogAdapter(get_logger(name), {'ref_image_id': ref_image_id})


def set_level(level: str):
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(getattr(logging, level.upper()))
