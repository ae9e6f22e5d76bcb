# clinic_guard/core/logging_config.py
"""
Logging for ClinicGuard.

Application logs go to the console and a rotating file. Threat events from
the "clinic_guard.audit" logger are additionally written to their own
rotating file, one line per event, so the audit trail survives log noise.
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

AUDIT_LOGGER_NAME = "clinic_guard.audit"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# 5 MB per file, 5 files
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 5


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    target = str(path.resolve())
    return any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == target
        for h in logger.handlers
    )


def _rotating_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging():
    """
    Configure root and audit logging from LOG_LEVEL, LOG_DIR and LOG_TO_FILE.

    Safe to call more than once; handlers are attached only once.
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))
    log_to_file = os.getenv("LOG_TO_FILE", "true").lower() not in ("0", "false", "no")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)

    if log_to_file:
        log_dir.mkdir(parents=True, exist_ok=True)

        app_log = log_dir / 'clinic_guard.log'
        if not _has_file_handler(root_logger, app_log):
            root_logger.addHandler(_rotating_handler(app_log, formatter))

        audit_log = log_dir / 'security_audit.log'
        if not _has_file_handler(audit_logger, audit_log):
            audit_logger.addHandler(
                _rotating_handler(audit_log, logging.Formatter('%(asctime)s %(message)s', datefmt=DATE_FORMAT))
            )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    return root_logger
