"""
Logging for the widget integration core.

Console output goes through ContextAwareLogger, which appends extras to the
message as pipe-delimited key=value pairs. Structured records can also be
shipped to an Azure Storage Queue through AzureQueueHandler.
"""

import logging
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from azure.storage.queue import QueueClient, QueueServiceClient

from ..config import get_config
from ..constants import QueueName
from .json_utils import dumps

LOGGER_NAME = "widget_integration"

_service_logger = None

# LogRecord attributes that are not treated as extras when shipping records
_RESERVED_RECORD_KEYS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "tenant_id"}


class ContextAwareLogger:
    """
    Logger wrapper that formats extra attributes into the message while preserving them.

    Keyword arguments other than ``extra`` (``exc_info``, ``stack_info``) are passed
    through to the underlying logger.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _log_with_formatted_extra(self, level: str, msg: str, **kwargs) -> None:
        extra = kwargs.pop("extra", None) or {}

        if extra:
            extra_str = " | ".join(f"{k}={v}" for k, v in extra.items())
            full_msg = f"{msg} | {extra_str}"
        else:
            full_msg = msg

        getattr(self.logger, level)(full_msg, extra=extra, **kwargs)

    def set_level(self, level) -> None:
        """Set the logging level of the underlying logger."""
        self.logger.setLevel(level)

    def is_enabled_for(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def info(self, msg, **kwargs):
        self._log_with_formatted_extra("info", msg, **kwargs)

    def error(self, msg, **kwargs):
        self._log_with_formatted_extra("error", msg, **kwargs)

    def warning(self, msg, **kwargs):
        self._log_with_formatted_extra("warning", msg, **kwargs)

    def debug(self, msg, **kwargs):
        self._log_with_formatted_extra("debug", msg, **kwargs)

    def exception(self, msg, **kwargs):
        """Log at ERROR level with the active exception attached."""
        self._log_with_formatted_extra("exception", msg, **kwargs)


class TenantContextFilter(logging.Filter):
    """Adds the current organization (tenant) to every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Lazy import, tenant_context imports this module
        from ..context.tenant_context import TenantContext

        tenant_id = TenantContext.get_current_tenant_id()
        if tenant_id:
            record.tenant_id = tenant_id

        return True


class AzureQueueHandler(logging.Handler):
    """
    Logging handler that ships records to an Azure Storage Queue as JSON.

    Records are buffered and sent one message per record once ``batch_size``
    records are waiting, and on close.
    """

    def __init__(
        self,
        queue_name: str = QueueName.LOGS.value,
        connection_string: Optional[str] = None,
        batch_size: int = 10,
    ):
        super().__init__()
        self.queue_name = queue_name
        self.connection_string = connection_string or get_config().queue.connection_string
        self.batch_size = batch_size
        self.log_buffer: List[Dict[str, Any]] = []

        if not self.connection_string:
            sys.stderr.write("Azure Storage connection string not provided\n")
            return

        try:
            self._ensure_queue_exists()
        except Exception as e:
            sys.stderr.write(f"Failed to ensure queue exists: {str(e)}\n")

    def _ensure_queue_exists(self) -> None:
        queue_service = QueueServiceClient.from_connection_string(self.connection_string)
        if not any(queue.name == self.queue_name for queue in queue_service.list_queues()):
            sys.stderr.write(f"Queue '{self.queue_name}' does not exist. Creating...\n")
            queue_service.create_queue(self.queue_name)

    def build_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        """Convert a LogRecord into the JSON document sent to the queue."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "tenant_id"):
            log_entry["tenant_id"] = record.tenant_id

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS and not key.startswith("__") and not callable(value)
        }
        if context:
            log_entry["context"] = context

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": [
                    line.rstrip() for line in traceback.format_exception(*record.exc_info)
                ],
            }

        return log_entry

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.log_buffer.append(self.build_entry(record))
            if len(self.log_buffer) >= self.batch_size:
                self.flush()
        except Exception:
            self.handleError(record)

    def flush(self) -> None:
        """Send any buffered log records to the queue."""
        if not self.log_buffer or not self.connection_string:
            return

        try:
            queue_client = QueueClient.from_connection_string(
                conn_str=self.connection_string, queue_name=self.queue_name
            )
            for log_entry in self.log_buffer:
                try:
                    queue_client.send_message(dumps(log_entry))
                except Exception as log_error:
                    sys.stderr.write(f"Error sending individual log entry: {str(log_error)}\n")
            self.log_buffer.clear()
        except Exception as e:
            sys.stderr.write(f"Error sending logs to Azure Queue: {str(e)}\n")

    def close(self) -> None:
        self.flush()
        super().close()


def _to_level(log_level: Union[int, str]) -> int:
    if isinstance(log_level, str):
        return getattr(logging, log_level.upper(), logging.INFO)
    return log_level


def configure_logging(
    service_name: str,
    log_level: Optional[Union[int, str]] = None,
    enable_queue: Optional[bool] = None,
    queue_name: Optional[str] = None,
    queue_batch_size: int = 10,
    connection_string: Optional[str] = None,
) -> ContextAwareLogger:
    """
    Configure logging with console and optional queue output.

    Args:
        service_name: Name of the running service (poller, reaper, api, ...)
        log_level: Logging level (default: config.logging.level)
        enable_queue: Ship records to Azure Queue (default: config.features.enable_logs_queue)
        queue_name: Name of the logs queue (default: config.queue.logs_queue_name)
        queue_batch_size: Number of records buffered before sending
        connection_string: Azure Storage connection string (default: config.queue)

    Returns:
        The configured logger wrapped with ContextAwareLogger
    """
    global _service_logger

    app_config = get_config()
    if log_level is None:
        log_level = app_config.logging.level
    if enable_queue is None:
        enable_queue = app_config.features.enable_logs_queue
    if connection_string is None:
        connection_string = app_config.queue.connection_string
    queue_name = queue_name or app_config.queue.logs_queue_name
    level = _to_level(log_level)

    logger = logging.getLogger(f"{LOGGER_NAME}.{service_name}")
    logger.setLevel(level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    tenant_filter = TenantContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    console_handler.addFilter(tenant_filter)
    logger.addHandler(console_handler)

    if enable_queue:
        queue_handler = AzureQueueHandler(
            queue_name=queue_name, connection_string=connection_string, batch_size=queue_batch_size
        )
        queue_handler.setLevel(level)
        queue_handler.addFilter(tenant_filter)
        logger.addHandler(queue_handler)

    wrapped_logger = ContextAwareLogger(logger)
    wrapped_logger.info(
        "Service logger configured",
        extra={
            "service_name": service_name,
            "queue_logging": enable_queue,
            "queue_name": queue_name if enable_queue else None,
        },
    )
    _service_logger = wrapped_logger
    return wrapped_logger


def get_logger(log_level: Optional[Union[int, str]] = None) -> ContextAwareLogger:
    """
    Get the service logger, falling back to the package logger when
    configure_logging has not been called.
    """
    if _service_logger is not None:
        return _service_logger

    logger = logging.getLogger(LOGGER_NAME)
    if log_level is None:
        log_level = get_config().logging.level
    logger.setLevel(_to_level(log_level))
    return ContextAwareLogger(logger)


def reset_logging() -> None:
    """Drop the configured service logger (used by tests)."""
    global _service_logger
    _service_logger = None
