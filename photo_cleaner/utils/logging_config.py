# utils/logging_config.py

import logging
import logging.handlers
from pathlib import Path
import json
from datetime import datetime

LOGGER_NAME = "photo_cleaner"


def setup_logging(log_level: str = "INFO", log_dir: str = "logs",
                  console: bool = True) -> logging.Logger:
    """
    Attach console, rotating text and rotating JSON handlers to the
    package logger. Calling it again replaces the previous handlers.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level = getattr(logging, log_level.upper(), logging.INFO)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        logger.addHandler(console_handler)

    # File handler (rotating)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path / f"{LOGGER_NAME}.log",
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    ))
    logger.addHandler(file_handler)

    # JSON handler for structured logs
    json_handler = logging.handlers.RotatingFileHandler(
        log_path / f"{LOGGER_NAME}_structured.json",
        maxBytes=10*1024*1024,
        backupCount=5
    )
    json_handler.setLevel(level)
    json_handler.setFormatter(JSONFormatter())
    logger.addHandler(json_handler)

    return logger


def setup_logging_from_config(config) -> logging.Logger:
    return setup_logging(config.log_level, config.log_dir)


# Passed through `extra=` by the engine so structured logs can be filtered per item
CONTEXT_FIELDS = ('session_id', 'local_identifier', 'group_key')


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with analysis context fields when present"""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)
