import logging
from logging.config import dictConfig
from typing import Optional

from .config import LOG_LEVEL, APP_NAME

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Loggers that get their own console handler instead of propagating to root.
_OWNED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", APP_NAME, "virthost")


def build_logging_config(level: Optional[str] = None) -> dict:
    level = (level or LOG_LEVEL).upper()
    owned = {
        name: {"handlers": ["console"], "level": level, "propagate": False}
        for name in _OWNED_LOGGERS
    }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {"": {"handlers": ["console"], "level": level}, **owned},
    }


def setup_logging(level: Optional[str] = None):
    config = build_logging_config(level)
    dictConfig(config)
    logging.getLogger(APP_NAME).info("Logging initialized at level %s", config["loggers"][""]["level"])
