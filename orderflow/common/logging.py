"""Structured JSON logging with request/order context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from orderflow.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.trace_id = trace_id_ctx.get()
        record.order_id = order_id_ctx.get()
        record.event_id = event_id_ctx.get()
        return True


def configure_logging(service_name: str | None = None, level: str | None = None) -> logging.Handler:
    """Install the JSON handler on the root logger and return it for later removal."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter(service_name or settings.service_name))
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(order_id)s %(event_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    return handler


def remove_logging(handler: logging.Handler) -> None:
    """Detach a handler installed by `configure_logging` and flush it."""

    root = logging.getLogger()
    if handler in root.handlers:
        root.removeHandler(handler)
    handler.flush()
    handler.close()


logger = logging.getLogger("orderflow")
