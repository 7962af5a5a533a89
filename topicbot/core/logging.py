"""Structured logging configuration using dictConfig."""
import logging
import logging.config
import sys
from typing import Any, Dict, Optional

from .settings import get_settings


def get_logging_config(service_name: Optional[str] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary."""
    settings = get_settings()
    production = settings.environment == "production"

    json_format = "%(asctime)s %(levelname)s %(name)s %(message)s"
    console_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    if service_name:
        json_format = f"%(asctime)s %(levelname)s {service_name} %(name)s %(message)s"
        console_format = f"%(asctime)s [{service_name}] [%(levelname)s] %(name)s: %(message)s"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "format": json_format,
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "class": "pythonjsonlogger.json.JsonFormatter",
            },
            "console": {
                "format": console_format,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": "json" if production else "console",
                "stream": sys.stdout,
            }
        },
        "loggers": {
            "topicbot": {
                "level": settings.log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn.access": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "INFO" if settings.debug else "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            # Generator requests and model downloads are noisy at INFO
            "httpx": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            "sentence_transformers": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["console"],
        },
    }


def setup_logging(service_name: Optional[str] = None) -> None:
    """Configure structured logging using dictConfig."""
    logging.config.dictConfig(get_logging_config(service_name))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
