"""
Secure logging utilities.

Scanned source lines end up in log records and evidence snippets, so every
handler installed here masks credentials before anything is written.
"""

import logging
import re
from typing import Any


LOGGER_NAME = "repo_compliance_analyzer"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

SENSITIVE_PATTERNS = [
    # Provider tokens
    (r'(gh[pousr]_)[A-Za-z0-9]{36,}', r'\1****'),
    (r'(github_pat_)[A-Za-z0-9_]+', r'\1****'),
    (r'(AKIA)[A-Z0-9]{16}', r'\1****'),
    (r'(sk_(?:live|test)_)[A-Za-z0-9]+', r'\1****'),
    (r'(xox[baprs]-)[A-Za-z0-9\-]+', r'\1****'),

    # Bearer and JWT values
    (r'(Bearer\s+)[A-Za-z0-9_\-\.]+', r'\1****'),
    (r'eyJ[A-Za-z0-9_\-]+\.eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+', r'****'),

    # key = value assignments
    (r'((?:api[_-]?key|token|secret|password|passwd)["\']?\s*[:=]\s*["\']?)[^\s"\',;]+', r'\1****'),

    # Credentials embedded in URLs
    (r'(://[^:/\s]+:)[^@\s]+(@)', r'\1****\2'),

    # PEM bodies
    (r'(-----BEGIN[^-]+PRIVATE KEY-----)[^-]+(-----END)', r'\1\n****\n\2'),
]

COMPILED_PATTERNS = [(re.compile(pattern, re.IGNORECASE), repl) for pattern, repl in SENSITIVE_PATTERNS]

SENSITIVE_KEYS = {
    "token", "password", "secret", "credential", "authorization",
    "api_key", "apikey", "private_key", "client_secret", "passwd",
}


def mask_sensitive_string(text: str) -> str:
    """
    Mask sensitive data in a string.

    Args:
        text: Text to sanitize

    Returns:
        Text with credentials replaced by ``****``
    """
    if not text:
        return text

    result = text
    for pattern, replacement in COMPILED_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def mask_mapping(data: dict[str, Any], depth: int = 0, max_depth: int = 8) -> dict[str, Any]:
    """
    Recursively mask sensitive values in a mapping.

    Values under credential-like keys are replaced outright; other string
    values go through :func:`mask_sensitive_string`.
    """
    if depth >= max_depth:
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
            result[key] = "****"
        elif isinstance(value, dict):
            result[key] = mask_mapping(value, depth + 1, max_depth)
        elif isinstance(value, str):
            result[key] = mask_sensitive_string(value)
        else:
            result[key] = value
    return result


class SensitiveDataFilter(logging.Filter):
    """Logging filter that masks credentials in messages and arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_sensitive_string(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_mapping(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    mask_sensitive_string(arg) if isinstance(arg, str)
                    else mask_mapping(arg) if isinstance(arg, dict)
                    else arg
                    for arg in record.args
                )

        return True


class SecureFormatter(logging.Formatter):
    """Formatter that masks the fully rendered record, tracebacks included."""

    def format(self, record: logging.LogRecord) -> str:
        return mask_sensitive_string(super().format(record))


def setup_secure_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
    log_file: str | None = None,
) -> logging.Logger:
    """
    Set up secure logging for the application.

    Calling this more than once replaces the handlers installed by the
    previous call instead of stacking duplicates.

    Args:
        level: Logging level (number or name such as ``"DEBUG"``)
        format_string: Custom format string
        log_file: Optional file to write logs to

    Returns:
        Configured package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if isinstance(handler.formatter, SecureFormatter):
            logger.removeHandler(handler)
            handler.close()

    formatter = SecureFormatter(format_string or DEFAULT_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(SensitiveDataFilter())
        logger.addHandler(handler)

    return logger


def get_secure_logger(name: str) -> logging.Logger:
    """
    Get a logger with secure filtering enabled.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger with sensitive data filter
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, SensitiveDataFilter) for f in logger.filters):
        logger.addFilter(SensitiveDataFilter())

    return logger
