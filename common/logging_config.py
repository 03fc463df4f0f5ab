import logging
import os
import re
import sys
from typing import Iterable, Optional


MASK = '***MASKED***'
SENSITIVE_KEYS = ('password', 'credential', 'token', 'authorization')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class SensitiveDataFilter(logging.Filter):
    """
    Mask TURN credentials, tokens and receiver ids before a record is emitted.

    ICE server dictionaries and signaling URLs end up in debug logs, so
    ``key: value`` pairs for any of SENSITIVE_KEYS and the ``rid`` query
    parameter are replaced with MASK in both the message and its args.
    """

    PATTERNS = [
        (re.compile(rf'({key}["\']?\s*[:=]\s*["\']?)([^"\'}}\s,]+)', re.IGNORECASE), rf'\1{MASK}')
        for key in SENSITIVE_KEYS
    ] + [
        (re.compile(r'([?&]rid=)([^&\s\'"]+)', re.IGNORECASE), rf'\1{MASK}'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._scrub(record.msg)

        if isinstance(record.args, dict):
            record.args = {key: self._scrub(value) for key, value in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._scrub(arg) for arg in record.args)

        return True

    def _scrub(self, value):
        if not isinstance(value, str):
            return value
        for pattern, replacement in self.PATTERNS:
            value = pattern.sub(replacement, value)
        return value


def _build_formatter(access_code: Optional[str] = None) -> logging.Formatter:
    fmt = LOG_FORMAT
    if access_code:
        fmt = LOG_FORMAT.replace('%(message)s', f'[{access_code}] - %(message)s')
    return logging.Formatter(fmt, datefmt=DATE_FORMAT)


def resolve_level(log_level: Optional[str] = None, default: str = 'INFO') -> int:
    """Turn a level name (or the LOG_LEVEL env var) into a logging constant."""
    name = (log_level or os.getenv('LOG_LEVEL', default)).upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    access_code: Optional[str] = None
) -> logging.Logger:
    """
    Attach a masked stderr handler to one logger tree.

    Args:
        component_name: Logger tree to configure ('cli', 'transfer', 'common')
        log_level: Level name; falls back to the LOG_LEVEL env var, then INFO
        access_code: Transfer code to prefix every message with

    Returns:
        The configured logger. Calling again for the same tree only
        updates its level.
    """
    level = resolve_level(log_level)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    # stdout is reserved for progress lines and command results
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(access_code))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def configure_logging(trees: Iterable[str], log_level: Optional[str] = None) -> logging.Logger:
    """Set up every tree in ``trees`` and return the logger of the first one."""
    loggers = [setup_logging(tree, log_level=log_level) for tree in trees]
    return loggers[0]


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_access_code(logger: logging.Logger, access_code: str) -> None:
    """Tag every line written by ``logger``'s handlers with the active access code."""
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setFormatter(_build_formatter(access_code))
