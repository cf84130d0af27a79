import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, List

_LOG_FILES = ("ideatank.log", "error.log", "audit.log")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default


def _drop_stale_rotations(log_dir: Path, base_name: str, keep: int) -> None:
    """Remove rotated files beyond ``keep`` left behind by a larger earlier setting."""
    if keep < 1:
        return
    rotated = sorted(
        log_dir.glob(f"{base_name}.*"),
        key=lambda path: path.stat().st_mtime,
        reverse=True,
    )
    for stale in rotated[keep:]:
        try:
            stale.unlink()
        except OSError:
            continue


def _rotating_handler(path: Path, level: str, max_bytes: int, keep: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": keep,
        "level": level,
        "encoding": "utf8",
    }


def _logger(handlers: List[str], level: str = "INFO") -> Dict[str, Any]:
    return {"handlers": handlers, "level": level, "propagate": False}


def setup_logging() -> None:
    """Configure console and rotating file logging.

    Files go to ``IDEATANK_LOG_DIR`` (default ``logs``): ``ideatank.log`` for
    everything at INFO, ``error.log`` for errors and ``audit.log`` for the admin
    audit trail.
    """
    log_dir = Path(os.getenv("IDEATANK_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    max_bytes = _env_int("IDEATANK_LOG_MAX_BYTES", 5 * 1024 * 1024)
    keep = _env_int("IDEATANK_LOG_BACKUP_COUNT", 3)
    console_level = os.getenv("IDEATANK_LOG_LEVEL", "INFO").upper()
    for name in _LOG_FILES:
        _drop_stale_rotations(log_dir, name, keep)

    everything = ["console", "file_main", "file_error"]
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": console_level,
                },
                "file_main": _rotating_handler(log_dir / "ideatank.log", "INFO", max_bytes, keep),
                "file_error": _rotating_handler(log_dir / "error.log", "ERROR", max_bytes, keep),
                "file_audit": _rotating_handler(log_dir / "audit.log", "INFO", max_bytes, keep),
            },
            "loggers": {
                "": {"handlers": everything, "level": "INFO"},
                "ideatank": _logger(everything, level="DEBUG"),
                "audit": _logger(["console", "file_audit"]),
                "uvicorn": _logger(["console", "file_main"]),
                "uvicorn.access": _logger(["console", "file_main"]),
                "uvicorn.error": _logger(["console", "file_error"]),
                # httpx logs every provider request at INFO.
                "httpx": _logger(["console", "file_main"], level="WARNING"),
            },
        }
    )
    logging.getLogger("ideatank").info("Logging configured in %s", log_dir)
