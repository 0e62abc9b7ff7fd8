"""
Logging configuration for the directory sync engine.

Everything goes to ``directory-sync.log`` (rotated at midnight, kept for
``retention_days``) and, optionally, to the console at a higher threshold.
Both handlers carry SensitiveDataFilter, so bind secrets and account
passwords never reach a log line even when a caller logs a whole settings
dict or LDAP attribute map.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

LOG_FILE_NAME = 'directory-sync.log'

DETAILED_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

# Libraries that are noisy below WARNING
QUIET_LOGGERS = ('ldap3', 'apscheduler')


class SensitiveDataFilter(logging.Filter):
    """Masks secret-bearing values in the fully formatted message."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_secret', 'bind_password', 'unicodePwd', 'userPassword',
        'secret', 'token', 'credential', 'pwd', 'authorization'
    ]

    MASK = '****'

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(re.escape(keyword) for keyword in self.SENSITIVE_KEYWORDS)
        self._patterns = [
            # password=value
            (re.compile(rf'((?:{keywords})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), rf'\g<1>{self.MASK}'),
            # 'unicodePwd': 'value', "bind_secret": b'value'
            (re.compile(rf'(["\'](?:{keywords})["\']\s*:\s*b?["\'])[^"\']*(["\'])', re.IGNORECASE),
             rf'\g<1>{self.MASK}\g<2>'),
            # "token": 12345
            (re.compile(rf'(["\'](?:{keywords})["\']\s*:\s*)[^"\',}}\s\[]+(?=\s*[,}}\]])', re.IGNORECASE),
             rf'\g<1>{self.MASK}'),
        ]

    def scrub(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        # Format first so secrets passed as %-arguments are caught as well
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.scrub(message)
        record.args = ()
        return True


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """
    Owns the root logger configuration for one process.

    ``setup_logging`` is applied once; later calls are ignored so that every
    entry point can call it unconditionally.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Configure the root logger from the ``logging`` config section.

        Args:
            config: Keys level, log_dir, rotation, retention_days,
                console_output and console_level (all optional)
        """
        if self.configured:
            return

        settings = config or {}
        file_level = _level(settings.get('level', 'INFO'), logging.INFO)
        self.log_dir = self._usable_directory(settings.get('log_dir', 'logs'))
        self.retention_days = int(settings.get('retention_days', 7))

        scrubber = SensitiveDataFilter()
        handlers = [self._file_handler(settings.get('rotation', 'daily'), file_level)]
        if settings.get('console_output', True):
            console = logging.StreamHandler()
            console.setLevel(_level(settings.get('console_level', 'WARNING'), logging.WARNING))
            console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console)

        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(file_level)
        for handler in handlers:
            handler.addFilter(scrubber)
            root.addHandler(handler)

        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        removed = self._remove_expired_logs()
        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at "
                    f"{logging.getLevelName(file_level)}, keeping {self.retention_days} days"
                    + (f", removed {removed} expired files" if removed else ''))

    @staticmethod
    def _usable_directory(path: str) -> str:
        """``path`` if it exists or can be created, otherwise the working directory."""
        if not path:
            return '.'
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            # root handlers are not installed yet, so this can only go to stdout
            print(f"Warning: cannot create log directory {path} ({e}); logging to the current directory")
            return '.'
        return path

    def _file_handler(self, rotation: str, level: int) -> logging.Handler:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    def _remove_expired_logs(self) -> int:
        """Delete rotated files older than the retention period; returns how many."""
        if self.retention_days <= 0:
            return 0

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        removed = 0
        for path in self.get_log_files():
            if os.path.basename(path) == LOG_FILE_NAME:
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
                    removed += 1
            except OSError as e:
                print(f"Warning: could not remove expired log file {path}: {e}")
        return removed

    def get_log_files(self) -> List[str]:
        """The active log file and its rotations."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}*')))

    def get_log_stats(self) -> Dict[str, Any]:
        files = self.get_log_files()
        total_size = sum(os.path.getsize(path) for path in files if os.path.exists(path))
        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(files),
            'total_size_bytes': total_size,
            'total_size_mb': round(total_size / (1024 * 1024), 2)
        }


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging; later calls are no-ops."""
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()
