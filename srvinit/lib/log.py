import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

_RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

COLORS = {
    logging.DEBUG: '\033[0;37m',
    logging.WARNING: '\033[1;33m',
    logging.ERROR: '\033[0;31m',
    logging.CRITICAL: '\033[0;31m',
}
RESET = '\033[0m'


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are kept as keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith('_'):
                payload[key] = value
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):

    def __init__(self, color: bool = True):
        super().__init__('%(levelname)s: %(message)s')
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = COLORS.get(record.levelno)
        if self.color and color:
            return f"{color}{line}{RESET}"
        return line


def configure_logging(verbosity: int = 0, log_format: str = 'text',
                      log_file: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter: logging.Formatter
    if log_format == 'json':
        formatter = JSONFormatter()
    else:
        formatter = ConsoleFormatter()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)
