"""
Logging setup and configuration for Directory Sync.

Sets up the root logger with a rotating file handler, an optional console
handler and a filter that keeps service account keys and OAuth tokens out of
the log files.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials and tokens from log messages."""

    SENSITIVE_KEYWORDS = [
        'private_key', 'private_key_id', 'client_secret', 'credentials',
        'access_token', 'refresh_token', 'id_token', 'token', 'secret',
        'password', 'authorization',
    ]

    PEM_PATTERN = re.compile(
        r'-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----',
        re.DOTALL,
    )
    BEARER_PATTERN = re.compile(r'((?:Bearer|Basic)\s+)[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE)

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(re.escape(k) for k in self.SENSITIVE_KEYWORDS)
        # key=value and key: value
        self._assignment = re.compile(rf'\b({keywords})(\s*[=:]\s*)(?!["\'{{\[]|(?:Bearer|Basic)\s)[^\s,}}\]]+', re.IGNORECASE)
        # "key": "value" in JSON bodies
        self._json_string = re.compile(rf'("(?:{keywords})"\s*:\s*")(?:[^"\\]|\\.)*(")', re.IGNORECASE)

    def scrub(self, message: str) -> str:
        message = self.PEM_PATTERN.sub('****', message)
        message = self._json_string.sub(r'\1****\2', message)
        message = self._assignment.sub(r'\1\2****', message)
        message = self.BEARER_PATTERN.sub(r'\1****', message)
        return message

    def filter(self, record):
        """Scrub the fully formatted message so arguments are covered too."""
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.scrub(message)
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for the Directory Sync application.

    Logging is configured once per process; later calls are ignored.
    """

    LOG_FILE_NAME = 'directory-sync.log'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: The 'logging' section of the configuration
        """
        if self.configured:
            return

        logging_config = config or {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'INFO').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%H:%M:%S'
            ))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # The API client logs every discovery fetch at INFO
        logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)
        logging.getLogger('googleapiclient.discovery').setLevel(logging.WARNING)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the configured rotation.

        Args:
            rotation: 'daily'/'midnight' for timed rotation, anything else for a plain file
        """
        log_file = os.path.join(self.log_dir, self.LOG_FILE_NAME)

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler

        return logging.FileHandler(log_file, encoding='utf-8')

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith(self.LOG_FILE_NAME):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, self.LOG_FILE_NAME + '*')))


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: The 'logging' section of the configuration
    """
    _logging_manager.setup_logging(config)


class ChangeAuditLogger:
    """Records every mutation applied to the directory on a dedicated 'audit' logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_change(self, operation: str, target: str, parent: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Directory change {status}: {operation} target={target} parent={parent}")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


audit_logger = ChangeAuditLogger()
