"""Logging setup shared by the API and the Lambda handler."""

import logging
import logging.config


def setup_logging(level: str = "INFO") -> None:
    level = level.upper()
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
        "loggers": {
            "uvicorn": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "WARNING",
            },
        },
    }
    logging.config.dictConfig(config)
    logging.getLogger(__name__).debug("Logging configured at %s", level)
