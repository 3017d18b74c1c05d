"""
Logging setup and configuration for LDAP User Mappings.

This module provides centralized logging configuration: file output with
midnight rotation and retention, optional console output, scrubbing of credentials
from log messages, and an audit logger for mapping changes.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta

LOG_FILE_NAME = 'ldap_user_mappings.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'credential',
        'pwd', 'api_key', 'client_secret', 'access_token', 'refresh_token'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', r'\1****\2', msg, flags=re.IGNORECASE)

            # 'key': 'value' and "key": "value"
            for keyword in self.SENSITIVE_KEYWORDS:
                msg = re.sub(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', r'\1****\2', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class LoggingManager:
    """
    Configures the root logger once per process.

    Log lines go to a file under ``log_dir`` that rolls over at midnight and
    keeps ``retention_days`` old files. Warnings also go to the console unless
    ``console_output`` is off.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        if self.configured:
            return

        config = config or {}
        level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)
        self.log_dir = config.get('log_dir', 'logs')
        self.retention_days = config.get('retention_days', 7)
        console_enabled = config.get('console_output', True)

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        sensitive_filter = SensitiveDataFilter()

        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=os.path.join(self.log_dir, LOG_FILE_NAME),
            when='midnight',
            backupCount=self.retention_days,
            encoding='utf-8'
        )
        file_handler.suffix = '%Y-%m-%d'
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_level = str(config.get('console_level', 'WARNING')).upper()
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging to {self.log_dir} at {logging.getLevelName(level)}, keeping {self.retention_days} days")

    def _ensure_log_directory(self) -> None:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            logging.getLogger(__name__).warning(
                f"Could not create log directory {self.log_dir}: {e}; using current directory")
            self.log_dir = '.'

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        logger = logging.getLogger(__name__)
        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    logger.debug(f"Removed old log file: {log_file}")
            except OSError as e:
                logger.warning(f"Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Forget the current configuration so setup_logging can run again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            handler.close()
            root_logger.removeHandler(handler)
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Logger for changes to the mapping configuration and resolution failures."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_mapping_saved(self, option_key: str, field_count: int):
        self.logger.info(f"Mapping saved: option={option_key} fields={field_count}")

    def log_resolution_failure(self, field: str, reason: str):
        self.logger.warning(f"Attribute resolution failed: field={field} - {reason}")


# Global audit logger instance
audit_logger = AuditLogger()
