"""
Operation context for handling cross-cutting concerns.

This module provides context management for operations including logging,
error handling, and metrics collection.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar, Union, cast

from ..config import get_config
from ..constants import OperationStatus
from ..exceptions import BaseError, get_correlation_id, set_correlation_id
from ..utils.logger import ContextAwareLogger, get_logger
from .tenant_context import TenantContext


class OperationContext:
    """Context for a specific operation."""

    def __init__(self, operation_name: str, correlation_id: Optional[str] = None, **context):
        self.operation_name = operation_name
        self.operation_id = str(uuid.uuid4())

        # Child operations inherit the correlation ID of the outermost one
        self.correlation_id = correlation_id or get_correlation_id() or str(uuid.uuid4())
        set_correlation_id(self.correlation_id)

        self.context = context
        self.context["operation_id"] = self.operation_id
        self.context["correlation_id"] = self.correlation_id

        self.start_time = time.monotonic()
        self.metrics: Dict[str, Union[int, float]] = {}

    @property
    def duration_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000

    def add_context(self, **kwargs) -> None:
        self.context.update(kwargs)

    def add_metric(self, name: str, value: Union[int, float]) -> None:
        self.metrics[name] = value


class OperationHandler:
    """Handles operation logging, error handling, and metrics."""

    def __init__(self, logger: Optional[ContextAwareLogger] = None):
        self.logger = logger if logger is not None else get_logger()

    def _emit_metric(self, name: str, context: Dict[str, Any], status: str, duration_ms: float):
        app_config = get_config()
        if not app_config.features.enable_metrics or not app_config.queue.connection_string:
            return

        try:
            from ..schemas.metric_model import OperationMetric
            from ..utils.metrics_utils import process_metrics

            metric = OperationMetric.duration(
                operation=name,
                module=context.get("source_module", ""),
                function=name.split(".")[-1],
                tenant_id=context.get("tenant_id", ""),
                status=status,
                duration_ms=duration_ms,
            )
            process_metrics([metric])
        except Exception as metric_error:
            self.logger.warning(f"Failed to collect metrics: {str(metric_error)}")

    @contextmanager
    def operation(self, name: str, **context):
        """Context manager wrapping one logged, timed operation."""
        tenant_id = TenantContext.get_current_tenant_id()
        if tenant_id and "tenant_id" not in context:
            context["tenant_id"] = tenant_id

        op_ctx = OperationContext(name, **context)
        ids = {"operation_id": op_ctx.operation_id, "correlation_id": op_ctx.correlation_id}

        self.logger.debug(f"ENTER: {name}", extra={**context, **ids})

        try:
            yield op_ctx
        except BaseError as e:
            e.add_context(
                operation_name=name,
                operation_id=op_ctx.operation_id,
                operation_duration_ms=op_ctx.duration_ms,
            )
            # BaseError already logged itself
            self.logger.error(
                f"ERROR: {name} -> {e.error_code.value}: {e.message}",
                extra={
                    **context,
                    **ids,
                    "duration_ms": op_ctx.duration_ms,
                    "error_id": e.error_id,
                    "error_code": e.error_code.value,
                    "status": OperationStatus.ERROR.value,
                    **op_ctx.metrics,
                },
            )
            self._emit_metric(name, context, f"error:{e.error_code.value}", op_ctx.duration_ms)
            raise
        except Exception as e:
            self.logger.exception(
                f"ERROR: {name} -> {type(e).__name__}: {str(e)}",
                extra={
                    **context,
                    **ids,
                    "duration_ms": op_ctx.duration_ms,
                    "error_type": type(e).__name__,
                    "status": OperationStatus.ERROR.value,
                    **op_ctx.metrics,
                },
            )
            self._emit_metric(name, context, OperationStatus.ERROR.value, op_ctx.duration_ms)
            raise

        self.logger.info(
            f"EXIT: {name}",
            extra={
                **context,
                **ids,
                "duration_ms": op_ctx.duration_ms,
                "status": OperationStatus.SUCCESS.value,
                **op_ctx.metrics,
            },
        )
        self._emit_metric(name, context, OperationStatus.SUCCESS.value, op_ctx.duration_ms)


F = TypeVar("F", bound=Callable[..., Any])


def _sanitize_param(param):
    """Sanitize parameter for logging to avoid sensitive data or huge objects."""
    if param is None:
        return None
    elif isinstance(param, (str, int, float, bool)):
        return param
    elif isinstance(param, dict) and len(param) < 10:
        return {k: _sanitize_param(v) for k, v in param.items()}
    elif isinstance(param, (list, tuple)) and len(param) < 10:
        return [_sanitize_param(x) for x in param]
    return type(param).__name__


def operation(name: Union[Optional[str], Callable] = None):
    """
    Decorator wrapping a function or method in OperationHandler.operation.

    Args:
        name: Optional operation name. Defaults to ``module.Class.function``.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            is_method = bool(args) and hasattr(args[0], func.__name__)
            if name is not None:
                op_name = name
            else:
                op_name = func.__name__
                if is_method:
                    op_name = f"{args[0].__class__.__name__}.{op_name}"
                op_name = f"{func.__module__.split('.')[-1]}.{op_name}"

            context: Dict[str, Any] = {"source_module": func.__module__}
            if is_method:
                context["class"] = args[0].__class__.__name__

            logger = get_logger()
            if logger.is_enabled_for(logging.DEBUG):
                call_args = [_sanitize_param(a) for a in (args[1:] if is_method else args)]
                call_kwargs = {k: _sanitize_param(v) for k, v in kwargs.items()}
                logger.debug(f"args: {call_args}, kwargs: {call_kwargs}")

            with OperationHandler(logger).operation(op_name, **context):
                return func(*args, **kwargs)

        return cast(F, wrapper)

    if callable(name):
        func, name = name, None
        return decorator(func)

    return decorator
