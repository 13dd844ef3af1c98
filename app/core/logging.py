import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from app.config import settings

LEVEL_COLORS = {
    'DEBUG': '\033[36m',    # Cyan
    'INFO': '\033[32m',     # Green
    'WARNING': '\033[33m',  # Yellow
    'ERROR': '\033[31m',    # Red
    'CRITICAL': '\033[35m', # Magenta
}
RESET = '\033[0m'

QUIET_LOGGERS = ("uvicorn.access", "asyncpg", "httpcore", "httpx", "PIL")


class ExecutionFormatter(logging.Formatter):
    """
    Console formatter with colored levels.

    Records logged with extra={"context": log_execution_context(...)} get the
    execution and order ids appended, so the lines of one pass or one
    issuance can be grepped together.
    """

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_color: bool = True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        line = super().format(record)

        if self.use_color and record.levelname in LEVEL_COLORS:
            line = line.replace(
                record.levelname, f"{LEVEL_COLORS[record.levelname]}{record.levelname}{RESET}", 1
            )

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            tags = [f"{key}={context[key]}" for key in ("execution_id", "order_id") if context.get(key)]
            if tags:
                line = f"{line} | {' '.join(tags)}"

        return line


def setup_logging(level: Optional[int] = None):
    """Configure the root logger once for the API, the loop and the CLI"""
    level = level or (logging.DEBUG if settings.debug else logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ExecutionFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        use_color=sys.stdout.isatty()
    ))
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def log_execution_context(execution_id: str, order_id: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """Context dict for extra={"context": ...} on pass and issuance log lines"""
    context = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "execution_id": execution_id,
    }

    if order_id:
        context["order_id"] = str(order_id)

    context.update(extra)
    return context
