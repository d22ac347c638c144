import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

import colorlog

from rankwarden.utils.constants import LOG_DIR, LOGGER_NAME

LEVEL_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}

FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s'

# Loggers whose records are also written to the rank audit file
AUDIT_LOGGERS = ('transitions', 'uprank_requests', 'locks')

# Third-party loggers that flood DEBUG output
QUIET_LOGGERS = ('discord.http', 'discord.gateway', 'sqlalchemy.engine', 'asyncio')


class ConsoleFormatter(colorlog.ColoredFormatter):
    def __init__(self):
        super().__init__(
            fmt='%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            log_colors=LEVEL_COLORS,
        )

    def formatException(self, ei) -> str:
        return f"\n{super().formatException(ei)}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line; anything passed through ``extra`` lands under 'extra'"""

    _STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': self.formatTime(record, self.datefmt),
            'name': record.name,
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        extra = {k: v for k, v in vars(record).items() if k not in self._STANDARD_ATTRS}
        if extra:
            log_data['extra'] = extra
        return json.dumps(log_data, default=str)


class AuditFilter(logging.Filter):
    """Pass only records from the rank-changing services"""

    def __init__(self):
        super().__init__()
        self.prefixes = tuple(f'{LOGGER_NAME}.{name}' for name in AUDIT_LOGGERS)

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(self.prefixes)


def _file_handler(path: Path,
                  level: int,
                  formatter: logging.Formatter,
                  max_bytes: int = 10 * 1024 * 1024,
                  backup_count: int = 5) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        filename=path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _install_excepthook(logger: logging.Logger) -> None:
    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback),
                        extra={'type': exc_type.__name__})

    sys.excepthook = handle_exception


def setup_logging(level: Optional[Union[str, int]] = None,
                  json_logging: bool = False,
                  log_dir: Optional[Path] = None) -> None:
    """
    Configure the root logger for the bot process

    Args:
        level: Console and application log level (default INFO)
        json_logging: Write the log files as JSON lines instead of plain text
        log_dir: Directory for rankwarden.log, error.log and rank_audit.log
    """
    level = level or logging.INFO
    log_directory = Path(log_dir or LOG_DIR)
    log_directory.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    file_formatter = JSONFormatter() if json_logging else logging.Formatter(FILE_FORMAT)
    root.addHandler(_file_handler(log_directory / 'rankwarden.log', logging.DEBUG, file_formatter))
    root.addHandler(_file_handler(log_directory / 'error.log', logging.ERROR, file_formatter))

    audit = _file_handler(log_directory / 'rank_audit.log', logging.INFO, file_formatter)
    audit.addFilter(AuditFilter())
    root.addHandler(audit)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app_logger = logging.getLogger(LOGGER_NAME)
    app_logger.setLevel(level)
    _install_excepthook(app_logger)

    app_logger.info("Logging system initialized",
                    extra={'log_dir': str(log_directory), 'json_logging': json_logging})


class LoggerAdapter(logging.LoggerAdapter):
    """Merges fixed context (employee id, request id) into every record's extra"""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        extra = dict(kwargs.get('extra') or {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> Union[logging.Logger, LoggerAdapter]:
    """Logger under the application namespace, wrapped in an adapter when context is given"""
    logger = logging.getLogger(f'{LOGGER_NAME}.{name}')
    if context:
        return LoggerAdapter(logger, context)
    return logger
