"""
Middleware composition for engine operations.

A middleware is a function (name, operation) -> operation that wraps an
async operation. decorate() applies a list of middlewares once, at engine
construction; the first middleware in the list is the outermost wrapper.

Provided middlewares:
- monitor(metrics): call counts, durations and errors per operation
- authorize(hook): access hook consulted before every call
- log_calls(logger): debug logging of entry/exit with duration
"""

from __future__ import annotations

import functools
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import AccessDeniedError
from .values import now_ms

logger = logging.getLogger(__name__)

Operation = Callable[..., Awaitable[Any]]
Middleware = Callable[[str, Operation], Operation]
AccessHook = Callable[[str, tuple, Dict[str, Any]], Any]


def decorate(name: str, op: Operation, *middlewares: Middleware) -> Operation:
    """Wrap an async operation with middlewares, first one outermost."""
    wrapped = op
    for middleware in reversed(middlewares):
        wrapped = middleware(name, wrapped)
    return functools.wraps(op)(wrapped)


@dataclass
class OperationMetrics:
    """Timing and error statistics for one operation."""

    count: int = 0
    total_ms: float = 0.0
    avg_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    errors: int = 0
    last_error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_ms": self.total_ms,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "errors": self.errors,
            "last_error": self.last_error,
        }


@dataclass
class MetricsRegistry:
    """Per-engine collection of OperationMetrics."""

    operations: Dict[str, OperationMetrics] = field(default_factory=dict)

    def get(self, name: str) -> OperationMetrics:
        return self.operations.setdefault(name, OperationMetrics())

    def record_success(self, name: str, duration_ms: float) -> None:
        metric = self.get(name)
        metric.count += 1
        metric.total_ms += duration_ms
        metric.avg_ms = metric.total_ms / metric.count
        metric.min_ms = duration_ms if metric.min_ms is None else min(metric.min_ms, duration_ms)
        metric.max_ms = duration_ms if metric.max_ms is None else max(metric.max_ms, duration_ms)

    def record_error(self, name: str, error: BaseException) -> None:
        metric = self.get(name)
        metric.errors += 1
        metric.last_error = {
            "type": type(error).__name__,
            "message": str(error),
            "timestamp": now_ms(),
        }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: m.to_dict() for name, m in self.operations.items()}

    def reset(self) -> None:
        self.operations.clear()


def monitor(metrics: MetricsRegistry) -> Middleware:
    """Record duration of successful calls and errors of failed ones."""

    def middleware(name: str, op: Operation) -> Operation:
        async def monitored(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                result = await op(*args, **kwargs)
            except Exception as e:
                metrics.record_error(name, e)
                raise
            metrics.record_success(name, (time.perf_counter() - start) * 1000)
            return result

        return monitored

    return middleware


def authorize(hook: AccessHook) -> Middleware:
    """Consult an access hook before each call.

    The hook receives (operation, args, kwargs), may be sync or async, and
    refuses by raising AccessDeniedError or returning False.
    """

    def middleware(name: str, op: Operation) -> Operation:
        async def authorized(*args: Any, **kwargs: Any) -> Any:
            allowed = hook(name, args, kwargs)
            if inspect.isawaitable(allowed):
                allowed = await allowed
            if allowed is False:
                raise AccessDeniedError(name)
            return await op(*args, **kwargs)

        return authorized

    return middleware


def log_calls(call_logger: logging.Logger = logger) -> Middleware:
    """Debug-log operation entry and exit."""

    def middleware(name: str, op: Operation) -> Operation:
        async def logged(*args: Any, **kwargs: Any) -> Any:
            call_logger.debug(f"{name} started", extra={"operation": name})
            start = time.perf_counter()
            try:
                return await op(*args, **kwargs)
            finally:
                call_logger.debug(
                    f"{name} finished",
                    extra={
                        "operation": name,
                        "duration_ms": round((time.perf_counter() - start) * 1000, 3),
                    },
                )

        return logged

    return middleware
