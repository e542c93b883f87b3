# tasklane/core/logging.py
import logging
import sys
from datetime import datetime
from typing import Any

# Module-level default log level, can be changed by setup_logging()
_default_level: int = logging.INFO


def _format_ctx(ctx: Any) -> str:
    """Render structured metadata as trailing key=value pairs."""
    if not isinstance(ctx, dict) or not ctx:
        return ''
    parts = [f'{key}={value}' for key, value in ctx.items() if value is not None]
    return ' ' + ' '.join(parts) if parts else ''


class ColoredFormatter(logging.Formatter):
    """Colored formatter for tasklane logging"""

    # ANSI color codes
    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'tasklane.scheduler' -> 'scheduler'
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        component_padded = f'[{component}]'.ljust(14)
        level_padded = f'[{record.levelname}]'.ljust(10)

        level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
        ctx_str = _format_ctx(getattr(record, 'ctx', None))

        # Format: [time] [comp_name]   [level]     message key=value ...
        formatted = (
            f"{self.COLORS['LIGHT_BLUE']}[{time_str}]{self.COLORS['RESET']} "
            f"{self.COLORS['WHITE']}{component_padded}{self.COLORS['RESET']}"
            f"{level_color}{level_padded}{self.COLORS['RESET']}"
            f"{self.COLORS['WHITE']}{record.getMessage()}{self.COLORS['RESET']}"
            f"{self.COLORS['GRAY']}{ctx_str}{self.COLORS['RESET']}"
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger_name = f'tasklane.{component_name}'
    logger = logging.getLogger(logger_name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger


def log_ctx(**fields: Any) -> dict[str, Any]:
    """Build the ``extra`` mapping carrying structured metadata for a log call.

    Usage:
        logger.info('Task scheduled', extra=log_ctx(task_id=tid, correlation_id=cid))
    """
    return {'ctx': fields}
