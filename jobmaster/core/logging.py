"""
Logging setup for the API and worker processes.
Console output plus `error.log` / `combined.log` under LOG_DIR.
"""
import logging
import logging.config
import os

LOG_FORMAT = "%(asctime)s [JobMaster-%(levelname)s] %(name)s: %(message)s"

_configured = False


def _level_to_int(level: str | int) -> int:
    """Accept 'INFO' / 'info' / 20 / logging.INFO and return an int level."""
    if isinstance(level, int):
        return level
    value = getattr(logging, str(level).upper(), None)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str | int = "INFO", log_dir: str | None = "logs") -> None:
    """
    Configure root logging once per process.
    Pass log_dir=None to log to the console only.
    """
    global _configured
    if _configured:
        return

    handlers: dict = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    }
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers["error_file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": os.path.join(log_dir, "error.log"),
            "level": "ERROR",
        }
        handlers["combined_file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": os.path.join(log_dir, "combined.log"),
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": handlers,
        "root": {"level": _level_to_int(level), "handlers": list(handlers)},
    })
    _configured = True
