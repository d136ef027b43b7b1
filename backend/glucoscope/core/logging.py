import logging
import os
from logging.config import dictConfig

PACKAGE_LOGGER = "glucoscope"

# chatty third-party loggers; the store client logs every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def _level(name: str, default: str) -> str:
    return os.environ.get(name, default).upper()


def configure_logging() -> None:
    """
    Console logging for the API process. LOG_LEVEL sets the root and uvicorn
    level; GLUCOSCOPE_LOG_LEVEL overrides it for the analytics package only,
    so rollup and forecast debug output can be enabled on its own.
    """
    log_level = _level("LOG_LEVEL", "INFO")
    package_level = _level("GLUCOSCOPE_LOG_LEVEL", log_level)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S%z",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "structured",
                }
            },
            "loggers": {
                PACKAGE_LOGGER: {"handlers": ["console"], "level": package_level, "propagate": False},
                "uvicorn": {"handlers": ["console"], "level": log_level},
                "uvicorn.error": {"handlers": ["console"], "level": log_level, "propagate": True},
                "uvicorn.access": {"handlers": ["console"], "level": log_level, "propagate": False},
                **{name: {"level": "WARNING"} for name in QUIET_LOGGERS},
            },
            "root": {"handlers": ["console"], "level": log_level},
        }
    )
    logging.getLogger(PACKAGE_LOGGER).debug(
        "Logging configured", extra={"level": log_level, "package_level": package_level}
    )


__all__ = ["configure_logging"]
