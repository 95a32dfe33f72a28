"""
Logging setup for Directory Sync.

The root logger is configured once per process from the ``logging`` section of
the configuration: a daily rotated ``directory-sync.log`` kept for
``retention_days`` days, an optional console stream, and a filter that masks
credentials before any record is written. Registry passwords, SMTP passwords,
service account keys, signed assertions and bearer tokens all pass through the
same log calls as ordinary sync decisions.
"""

import os
import re
import sys
import glob
import time
import logging
import logging.handlers
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = 'directory-sync.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

MASK = '****'


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in log records."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret', 'private_key',
        'assertion', 'credential', 'pwd', 'authorization', 'bearer',
        'access_token', 'refresh_token', 'client_secret'
    ]

    # key=value and key: value
    ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*[=:]\s*)(?!")[^\s,&}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    # "key": "value"
    JSON_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    AUTHORIZATION_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE)
    JWT_PATTERN = re.compile(r'eyJ[\w-]+\.[\w-]+\.[\w-]+')
    PEM_PATTERN = re.compile(r'-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----', re.DOTALL)

    def scrub(self, message: str) -> str:
        # Whole values before key=value pairs
        message = self.PEM_PATTERN.sub(MASK, message)
        message = self.JWT_PATTERN.sub(MASK, message)
        message = self.AUTHORIZATION_PATTERN.sub(rf'\1{MASK}', message)

        for pattern in self.JSON_PATTERNS:
            message = pattern.sub(rf'\1{MASK}\2', message)
        for pattern in self.ASSIGNMENT_PATTERNS:
            message = pattern.sub(rf'\1{MASK}', message)

        return message

    def filter(self, record):
        if record.args:
            record.msg = record.getMessage()
            record.args = None

        record.msg = self.scrub(str(record.msg))
        return True


@dataclass
class LogSettings:
    """The ``logging`` configuration section with defaults applied."""

    level: str = 'INFO'
    log_dir: str = 'logs'
    rotation: str = 'daily'
    retention_days: int = 7
    console_output: bool = True
    console_level: str = 'WARNING'

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LogSettings':
        data = data or {}
        known = {key: data[key] for key in cls.__dataclass_fields__ if data.get(key) is not None}
        return cls(**known)

    @property
    def rotates(self) -> bool:
        return self.rotation.lower() in ('daily', 'midnight')


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """Owns the handlers attached to the root logger."""

    def __init__(self):
        self.configured = False
        self.settings = LogSettings()
        self.log_dir: Optional[str] = None
        self.retention_days = self.settings.retention_days

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Attach the file and console handlers to the root logger.

        Later calls are ignored until ``reset`` is called.

        Args:
            config: The ``logging`` configuration section
        """
        if self.configured:
            return

        self.settings = LogSettings.from_dict(config)
        self.retention_days = self.settings.retention_days
        self.log_dir = self._prepare_log_dir(self.settings.log_dir)

        root_logger = logging.getLogger()
        root_logger.setLevel(_level(self.settings.level, logging.INFO))
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        secrets_filter = SensitiveDataFilter()
        for handler in self._build_handlers():
            handler.addFilter(secrets_filter)
            root_logger.addHandler(handler)

        removed = self.remove_expired_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {self.settings.level.upper()} "
            f"(rotation={self.settings.rotation}, retention={self.retention_days} days, "
            f"console={self.settings.console_output}, expired files removed={len(removed)})"
        )

    def _prepare_log_dir(self, log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            # The root logger has no handler yet
            sys.stderr.write(f"Cannot create log directory {log_dir} ({e}), logging to the working directory\n")
            return '.'
        return log_dir

    def _build_handlers(self) -> List[logging.Handler]:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if self.settings.rotates:
            file_handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8'
            )
            file_handler.suffix = '%Y-%m-%d'
        else:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')

        file_handler.setLevel(_level(self.settings.level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handlers = [file_handler]

        if self.settings.console_output:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(self.settings.console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console_handler)

        return handlers

    def remove_expired_logs(self) -> List[str]:
        """
        Delete rotated log files last modified before the retention period.

        Returns:
            Paths of the removed files
        """
        if not self.log_dir or self.retention_days <= 0:
            return []

        oldest_kept = time.time() - self.retention_days * 86400
        active_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        removed = []

        for path in self.get_log_files():
            if path == active_file:
                continue
            try:
                if os.path.getmtime(path) < oldest_kept:
                    os.remove(path)
                    removed.append(path)
            except OSError as e:
                sys.stderr.write(f"Cannot remove expired log file {path}: {e}\n")

        return removed

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def reset(self) -> None:
        """Close and detach the root handlers so logging can be configured again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    _logging_manager.setup_logging(config)


def cleanup_logs() -> List[str]:
    """Remove expired rotated log files now."""
    return _logging_manager.remove_expired_logs()


def reset_logging() -> None:
    _logging_manager.reset()
