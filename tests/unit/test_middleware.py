"""
Unit tests for operation middleware.
"""

import pytest

from dbaas.docquery.errors import AccessDeniedError
from dbaas.docquery.middleware import MetricsRegistry, authorize, decorate, log_calls, monitor


async def echo(value):
    """Return the value unchanged."""
    return value


async def fail(value):
    raise RuntimeError(f"failed with {value}")


class TestDecorate:
    """Tests for middleware composition."""

    @pytest.mark.asyncio
    async def test_first_middleware_is_outermost(self):
        order = []

        def tag(label):
            def middleware(name, op):
                async def wrapped(*args, **kwargs):
                    order.append(f"{label}:in")
                    result = await op(*args, **kwargs)
                    order.append(f"{label}:out")
                    return result

                return wrapped

            return middleware

        op = decorate("echo", echo, tag("a"), tag("b"))

        assert await op(1) == 1
        assert order == ["a:in", "b:in", "b:out", "a:out"]

    def test_keeps_operation_metadata(self):
        op = decorate("echo", echo, log_calls())

        assert op.__name__ == "echo"
        assert op.__doc__ == "Return the value unchanged."

    @pytest.mark.asyncio
    async def test_no_middlewares(self):
        assert await decorate("echo", echo)(5) == 5


class TestMonitor:
    """Tests for the metrics middleware."""

    @pytest.mark.asyncio
    async def test_records_success(self):
        metrics = MetricsRegistry()
        op = decorate("echo", echo, monitor(metrics))

        await op(1)
        await op(2)

        snapshot = metrics.snapshot()["echo"]
        assert snapshot["count"] == 2
        assert snapshot["errors"] == 0
        assert snapshot["min_ms"] <= snapshot["avg_ms"] <= snapshot["max_ms"]

    @pytest.mark.asyncio
    async def test_records_error_and_reraises(self):
        metrics = MetricsRegistry()
        op = decorate("fail", fail, monitor(metrics))

        with pytest.raises(RuntimeError):
            await op("x")

        metric = metrics.get("fail")
        assert metric.count == 0
        assert metric.errors == 1
        assert metric.last_error["type"] == "RuntimeError"
        assert metric.last_error["message"] == "failed with x"

    def test_reset(self):
        metrics = MetricsRegistry()
        metrics.record_success("op", 1.0)

        metrics.reset()

        assert metrics.snapshot() == {}


class TestAuthorize:
    """Tests for the access hook middleware."""

    @pytest.mark.asyncio
    async def test_hook_sees_call(self):
        seen = []

        def hook(name, args, kwargs):
            seen.append((name, args, kwargs))

        op = decorate("echo", echo, authorize(hook))

        assert await op(7) == 7
        assert seen == [("echo", (7,), {})]

    @pytest.mark.asyncio
    async def test_false_denies(self):
        op = decorate("echo", echo, authorize(lambda name, args, kwargs: False))

        with pytest.raises(AccessDeniedError) as exc_info:
            await op(1)

        assert exc_info.value.operation == "echo"

    @pytest.mark.asyncio
    async def test_async_hook_may_raise(self):
        async def hook(name, args, kwargs):
            raise AccessDeniedError(name, "read-only tenant")

        op = decorate("echo", echo, authorize(hook))

        with pytest.raises(AccessDeniedError, match="read-only tenant"):
            await op(1)

    @pytest.mark.asyncio
    async def test_denied_calls_counted_as_errors(self):
        metrics = MetricsRegistry()
        op = decorate(
            "echo", echo, monitor(metrics), authorize(lambda name, args, kwargs: False)
        )

        with pytest.raises(AccessDeniedError):
            await op(1)

        assert metrics.get("echo").errors == 1
