"""
Run logger handed to every provider.

Providers log ``(tag, severity, message)`` triples; the tag is the name of the
configured source or target. Severity filtering happens here, before the
record reaches the stdlib logging handlers.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import TimedRotatingFileHandler
from typing import Iterable, List, Optional


RUN_LOGGER_NAME = 'omnibackup.run'
RUN_LOG_FORMAT = '[%(asctime)s] %(levelname)s %(message)s'


class Severity(Enum):
    """Message priorities, mapped onto stdlib logging levels."""

    VERBOSE = logging.DEBUG
    INFO = logging.INFO
    ERROR = logging.ERROR

    @classmethod
    def parse_list(cls, value: Optional[str]) -> frozenset:
        """
        Parse a comma-separated priority list (e.g. ``"info, error"``).

        Unknown names are ignored; an empty or missing list enables all.
        """
        if not value:
            return frozenset(cls)

        parsed = set()
        for name in value.split(','):
            name = name.strip().upper()
            if name == 'ALL':
                return frozenset(cls)
            if name in cls.__members__:
                parsed.add(cls[name])

        return frozenset(parsed) if parsed else frozenset(cls)


class SeverityFilter(logging.Filter):
    """Pass only records whose run severity is enabled for a handler."""

    def __init__(self, priorities: Iterable[Severity]):
        super().__init__()
        self.priorities = frozenset(priorities)

    def filter(self, record):
        return getattr(record, 'severity', None) in self.priorities


class RunLogger:
    """
    Logging sink for one backup run.

    Thread-safe: sources and targets log from worker threads. Every accepted
    message is also kept in ``entries`` with a UTC timestamp.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, priorities: Optional[Iterable[Severity]] = None):
        self.logger = logger or logging.getLogger(RUN_LOGGER_NAME)
        self.priorities = frozenset(priorities) if priorities else frozenset(Severity)
        self.entries: List[str] = []
        self._lock = threading.Lock()

    def is_enabled(self, severity: Severity) -> bool:
        return severity in self.priorities

    def log(self, tag: str, severity: Severity, message: str, *args):
        """
        Log a message for a tag.

        Args:
            tag: Name of the source/target (or ``program``)
            severity: Message severity
            message: Message, %-formatted with args
            *args: Format arguments
        """
        if not self.is_enabled(severity):
            return

        text = self._format(message, args)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')

        with self._lock:
            self.entries.append(f"[{timestamp}] {tag} ({severity.name.lower()}): {text}")

        self.logger.log(severity.value, '%s: %s', tag, text, extra={'tag': tag, 'severity': severity})

    def verbose(self, tag: str, message: str, *args):
        self.log(tag, Severity.VERBOSE, message, *args)

    def info(self, tag: str, message: str, *args):
        self.log(tag, Severity.INFO, message, *args)

    def error(self, tag: str, message: str, *args):
        self.log(tag, Severity.ERROR, message, *args)

    @staticmethod
    def _format(message: str, args: tuple) -> str:
        if not args:
            return message
        try:
            return message % args
        except (TypeError, ValueError):
            return f"{message} {args!r}"


def plural(count: int) -> str:
    """Suffix for ``backup(s)`` style messages."""
    return '' if count == 1 else 's'


def build_run_logger(logger_configs, logger: Optional[logging.Logger] = None) -> RunLogger:
    """
    Create the run logger from configured loggers.

    ``console`` loggers write to stderr, ``file`` loggers write a daily
    rotated log file into the directory given in their settings. Without any
    configured logger, records propagate to the application handlers set up
    by ``configure_logging``.

    Args:
        logger_configs: Iterable of LoggerConfig
        logger: Target stdlib logger (defaults to ``omnibackup.run``)

    Returns:
        RunLogger enabled for the union of all configured priorities
    """
    logger = logger or logging.getLogger(RUN_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    priorities = set()
    failures = []
    formatter = logging.Formatter(RUN_LOG_FORMAT)

    for config in logger_configs:
        provider = (config.provider or '').strip().lower()

        try:
            if provider == 'console':
                handler = logging.StreamHandler()
            elif provider == 'file':
                directory = config.settings or os.path.join(os.getcwd(), 'logs')
                os.makedirs(directory, exist_ok=True)
                handler = TimedRotatingFileHandler(
                    os.path.join(directory, 'omnibackup-run.log'),
                    when='midnight',
                    utc=True,
                    backupCount=30
                )
            else:
                failures.append(f"Unknown logger {config.provider!r}")
                continue
        except OSError as e:
            failures.append(f"Could not create logger {config.provider!r}. Error: {e}")
            continue

        config_priorities = Severity.parse_list(config.priorities)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        handler.addFilter(SeverityFilter(config_priorities))
        logger.addHandler(handler)
        priorities.update(config_priorities)

    logger.propagate = not logger.handlers

    run_logger = RunLogger(logger, priorities or None)
    for failure in failures:
        run_logger.error('program', failure)

    return run_logger
