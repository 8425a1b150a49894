# file: src/utils/logger.py
"""
Logger manager: one named logger per component, each with its own level.
Console output always; rotating file output under <project_root>/logs when enabled.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class Logger:
    def __init__(self, project_root: Optional[str] = None, log_to_file: bool = False,
                 max_bytes: int = 5 * 1024 * 1024, backup_count: int = 3):
        self.project_root = project_root or os.getcwd()
        self.log_to_file = log_to_file
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.loggers: Dict[str, logging.Logger] = {}
        self.formatter = logging.Formatter(LOG_FORMAT)

    def create_logger(self, logger_name: str, logging_level: str = "INFO") -> logging.Logger:
        """Return the named logger, creating its handlers on first use."""
        level = logging.getLevelName(str(logging_level).upper())
        if not isinstance(level, int):
            level = logging.INFO

        logger = self.loggers.get(logger_name)
        if logger is not None:
            logger.setLevel(level)
            return logger

        logger = logging.getLogger(logger_name)
        logger.setLevel(level)
        logger.propagate = False
        # logging.getLogger is process wide; drop handlers left by another Logger instance
        for handler in list(logger.handlers):
            logger.removeHandler(handler)

        console = logging.StreamHandler()
        console.setFormatter(self.formatter)
        logger.addHandler(console)

        if self.log_to_file:
            logs_dir = os.path.join(self.project_root, "logs")
            os.makedirs(logs_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(logs_dir, f"{logger_name.lower()}.log"),
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(self.formatter)
            logger.addHandler(file_handler)

        self.loggers[logger_name] = logger
        return logger

    def close_all_loggers(self) -> None:
        for logger in self.loggers.values():
            for handler in list(logger.handlers):
                handler.flush()
                handler.close()
                logger.removeHandler(handler)
        self.loggers.clear()
