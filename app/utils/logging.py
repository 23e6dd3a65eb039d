import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict

from loguru import logger

from app.utils.context import get_request_id

DEFAULT_LOGGING_CONFIG: Dict[str, Any] = {
    "log_dir": "logs",
    "filename": "scheduler.log",
    "level": "info",
    "rotation": "20 days",
    "retention": "1 months",
    "console_format": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | {name}:{function}:{line} - {message}",
    "file_format": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | {name}:{function}:{line} - {message}",
    "use_json_logs": False,
}

# Stdlib loggers whose records are routed into loguru
INTERCEPTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "celery")


class InterceptHandler(logging.Handler):
    """Forwards stdlib log records (uvicorn, celery) to loguru with the current request id"""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(request_id=get_request_id() or "app").opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


class CustomizeLogger:
    """Configures loguru sinks from logging_config.json"""

    @classmethod
    def make_logger(cls, config_path: Path, environment: str = "logger"):
        config = {**DEFAULT_LOGGING_CONFIG, **cls.load_section(config_path, environment)}
        level = os.getenv("LOG_LEVEL", config["level"]).upper()

        logger.remove()
        logger.configure(extra={"request_id": "app"})
        logger.add(
            sys.stdout,
            enqueue=True,
            backtrace=True,
            level=level,
            format=config["console_format"],
            colorize=True,
        )
        logger.add(
            f"{config['log_dir']}/{date.today():%Y-%m-%d}-{config['filename']}",
            rotation=config["rotation"],
            retention=config["retention"],
            enqueue=True,
            backtrace=True,
            level=level,
            colorize=False,
            **cls._file_sink_options(config),
        )

        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
        for name in INTERCEPTED_LOGGERS:
            logging.getLogger(name).handlers = [InterceptHandler()]

        return logger

    @staticmethod
    def _file_sink_options(config: Dict[str, Any]) -> Dict[str, Any]:
        if config.get("use_json_logs") and config["file_format"] == "json":
            return {"serialize": True}
        return {"format": config["file_format"]}

    @staticmethod
    def load_section(config_path: Path, environment: str) -> Dict[str, Any]:
        """Settings for `environment`, falling back to the `logger` section"""
        if not config_path.exists():
            return {}
        with open(config_path) as config_file:
            config = json.load(config_file)
        return config.get(environment, config.get("logger", {}))


config_path = Path(__file__).resolve().parents[2] / "logging_config.json"
environment = "production" if os.getenv("ENVIRONMENT") == "production" else "logger"
custom_logger = CustomizeLogger.make_logger(config_path, environment)


def get_logger():
    """Logger bound to the request id of the current request, task or CLI run."""
    return custom_logger.bind(request_id=get_request_id() or "app")
