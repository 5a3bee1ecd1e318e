from __future__ import annotations

import logging
from pathlib import Path

import pytest

from hsm_custody import configure_logging


@pytest.fixture(autouse=True)
def _reset_custody_logger():
    logger = logging.getLogger("hsm_custody")
    saved = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in saved:
            handler.close()
            logger.removeHandler(handler)


def test_configure_logging_creates_rotating_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "hsm-custody.log"
    logger = configure_logging(
        log_file=log_file,
        level="INFO",
        max_bytes=1024,
        backup_count=2,
    )
    logging.getLogger("hsm_custody.custody").info("logging test message")

    for handler in logger.handlers:
        handler.flush()

    assert log_file.exists()
    contents = log_file.read_text(encoding="utf-8")
    assert "logging test message" in contents
    assert "hsm_custody.custody" in contents


def test_configure_logging_is_idempotent_per_file(tmp_path: Path) -> None:
    log_file = tmp_path / "custody.log"
    logger = configure_logging(log_file=log_file, level="INFO", console=True)
    handler_count = len(logger.handlers)

    configure_logging(log_file=log_file, level="DEBUG", console=True)

    assert len(logger.handlers) == handler_count
    assert logger.level == logging.DEBUG


def test_configure_logging_reads_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    log_file = tmp_path / "env.log"
    monkeypatch.setenv("HSM_CUSTODY_LOG_FILE", str(log_file))
    monkeypatch.setenv("HSM_CUSTODY_LOG_LEVEL", "warning")

    logger = configure_logging()

    assert logger.level == logging.WARNING
    assert log_file.exists()


def test_configure_logging_rejects_bad_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        configure_logging(log_file=tmp_path / "a.log", level="chatty")
    monkeypatch.setenv("HSM_CUSTODY_LOG_MAX_BYTES", "-1")
    with pytest.raises(ValueError, match="HSM_CUSTODY_LOG_MAX_BYTES"):
        configure_logging(log_file=tmp_path / "b.log", level="INFO")
