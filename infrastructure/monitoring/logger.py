import json
import logging
import sys
import traceback
from datetime import date, datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config.settings import Settings

API_LOGGER_NAME = 'fx.api'


class CustomJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_data'):
            log_entry['data'] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, cls=CustomJSONEncoder)


class AppLogger:
    """
    Logging configuration for processes embedding the FX client.

    Console output always; with ``log_to_file`` also rotating JSON logs under
    ``log_directory``: ``system/fx.log``, ``errors/errors.log`` (WARNING and
    above) and ``api/api_calls.log`` for the remote-call logger.
    """
    def __init__(self,
                 log_directory: str = "logs",
                 console_level: str = "INFO",
                 file_level: str = "DEBUG",
                 log_to_file: bool = False,
                 max_file_size: int = 10 * 1024 * 1024,
                 backup_count: int = 5):
        self.log_directory = Path(log_directory)
        self.console_level = getattr(logging, console_level.upper())
        self.file_level = getattr(logging, file_level.upper())
        self.log_to_file = log_to_file
        self.max_file_size = max_file_size
        self.backup_count = backup_count

        self._setup_logging()

    def _setup_logging(self) -> None:
        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.setLevel(logging.DEBUG)

        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

        self._setup_console_handler(root_logger)
        if self.log_to_file:
            self.log_directory.mkdir(parents=True, exist_ok=True)
            root_logger.addHandler(self._file_handler("system", "fx.log", self.file_level))
            root_logger.addHandler(self._file_handler("errors", "errors.log", logging.WARNING))
            api_logger = logging.getLogger(API_LOGGER_NAME)
            api_logger.addHandler(self._file_handler("api", "api_calls.log", logging.DEBUG))

    def _setup_console_handler(self, logger: logging.Logger) -> None:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.console_level)
        console_format = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
        console_handler.setFormatter(logging.Formatter(console_format, datefmt='%H:%M:%S'))
        logger.addHandler(console_handler)

    def _file_handler(self, subdirectory: str, filename: str, level: int) -> RotatingFileHandler:
        log_dir = self.log_directory / subdirectory
        log_dir.mkdir(exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / filename,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter())
        return handler


def configure_logging(settings: Settings) -> AppLogger:
    return AppLogger(
        log_directory=settings.LOG_DIRECTORY,
        console_level=settings.LOG_LEVEL,
        log_to_file=settings.LOG_TO_FILE,
    )


def get_api_logger() -> logging.Logger:
    return logging.getLogger(API_LOGGER_NAME)
