from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAMESPACE = "hsm_custody"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

DEFAULT_LOG_FILE = "logs/hsm-custody.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5


def _env_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {raw}")
    return parsed


def _resolve_level(level: str | int | None) -> int:
    resolved = level or os.environ.get("HSM_CUSTODY_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    if isinstance(resolved, int):
        return resolved
    normalized = resolved.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = logging.getLevelName(normalized)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {resolved}")
    return numeric


def _find_file_handler(logger: logging.Logger, path: Path) -> RotatingFileHandler | None:
    for existing in logger.handlers:
        if (
            isinstance(existing, RotatingFileHandler)
            and Path(existing.baseFilename).resolve() == path
        ):
            return existing
    return None


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    console: bool = False,
) -> logging.Logger:
    """
    Configure logging for the hsm_custody logger namespace.

    Records go to a rotating log file; ``console=True`` additionally mirrors
    them to stderr, which is what the example CLI uses. Calling this again
    with the same file only updates the level.

    Environment variable overrides:
    - HSM_CUSTODY_LOG_FILE
    - HSM_CUSTODY_LOG_LEVEL
    - HSM_CUSTODY_LOG_MAX_BYTES
    - HSM_CUSTODY_LOG_BACKUP_COUNT
    """

    numeric_level = _resolve_level(level)
    resolved_log_file = Path(
        str(log_file or os.environ.get("HSM_CUSTODY_LOG_FILE", DEFAULT_LOG_FILE))
    )
    if max_bytes is None:
        max_bytes = _env_non_negative_int(
            "HSM_CUSTODY_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES
        )
    if backup_count is None:
        backup_count = _env_non_negative_int(
            "HSM_CUSTODY_LOG_BACKUP_COUNT", DEFAULT_LOG_BACKUP_COUNT
        )
    if max_bytes < 0:
        raise ValueError("max_bytes must be >= 0.")
    if backup_count < 0:
        raise ValueError("backup_count must be >= 0.")

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)

    if console and not any(
        type(handler) is logging.StreamHandler for handler in logger.handlers
    ):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
    existing = _find_file_handler(logger, resolved_log_file.resolve())
    if existing is not None:
        existing.setLevel(numeric_level)
        return logger

    file_handler = RotatingFileHandler(
        resolved_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.info(
        "Configured custody logging (path=%s, level=%s, max_bytes=%d, backup_count=%d, console=%s)",
        resolved_log_file,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
        console,
    )
    return logger
