"""Logging setup and credential redaction for harness log output."""
import logging
import re
import sys
from typing import List, Optional, Pattern

SENSITIVE_PATTERNS: List[Pattern] = [
    re.compile(r'(redis|rediss|amqp|amqps|tcp|ssl|stomp)://[^:/@\s]*:[^@\s]+@', re.IGNORECASE),
    re.compile(r'(password|passwd|pwd|token|secret)\s*[:=]\s*[\'"]?[^\s\'",]+[\'"]?', re.IGNORECASE),
    re.compile(r'(REDIS_URL|BROKER_URL|FANOUT_STRESS_REDIS_URL)\s*=\s*[\'"]?[^\s\'\"]+[\'"]?', re.IGNORECASE),
]

REDACTED = '[REDACTED]'

LOG_FORMAT = "%(asctime)s %(threadName)s %(levelname)s %(name)s: %(message)s"


def sanitize(message: str) -> str:
    """Remove credentials from a message."""
    if not message:
        return message

    result = message
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)

    return result


class SecureLogger:
    """Logger wrapper that sanitizes all output."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _sanitize_args(self, args):
        return tuple(sanitize(arg) if isinstance(arg, str) else arg for arg in args)

    def debug(self, msg, *args, **kwargs):
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def info(self, msg, *args, **kwargs):
        if self._logger.isEnabledFor(logging.INFO):
            self._logger.info(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._logger.warning(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def error(self, msg, *args, **kwargs):
        self._logger.error(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def exception(self, msg, *args, **kwargs):
        self._logger.exception(sanitize(msg), *self._sanitize_args(args), **kwargs)


def get_logger(name: str) -> SecureLogger:
    return SecureLogger(logging.getLogger(name))


def configure_logging(level: str = "INFO", stream=None) -> logging.Handler:
    """Install a single stream handler on the package logger."""
    root = logging.getLogger("fanout_stress")
    for handler in list(root.handlers):
        if getattr(handler, "_fanout_stress", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._fanout_stress = True
    root.addHandler(handler)
    root.setLevel(_level(level))
    return handler


def _level(level: Optional[str]) -> int:
    value = logging.getLevelName(str(level or "INFO").upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value
