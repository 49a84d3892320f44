"""Counters, gauges and histograms with Prometheus text exposition."""

from __future__ import annotations

import math
import threading
from datetime import timedelta
from typing import Callable, Iterable, Iterator, Sequence

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    items = list(pairs)
    if not items:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in items) + "}"


def _seconds(duration: float | timedelta) -> float:
    return duration.total_seconds() if isinstance(duration, timedelta) else float(duration)


class _Metric:
    kind = ""

    def __init__(self, name: str, help: str, labelnames: Sequence[str] = ()) -> None:
        self.name = name
        self.help = help
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()

    def _key(self, values: Sequence[str]) -> tuple[str, ...]:
        if len(values) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(values)}"
            )
        return tuple(str(v) for v in values)

    def _sorted_pairs(self, key: tuple[str, ...]) -> list[tuple[str, str]]:
        return sorted(zip(self.labelnames, key))

    def samples(self) -> Iterator[str]:
        raise NotImplementedError

    def expose(self) -> str:
        lines = list(self.samples())
        if not lines:
            return ""
        header = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"]
        return "\n".join(header + lines) + "\n"


class _CounterChild:
    def __init__(self, counter: Counter, key: tuple[str, ...]) -> None:
        self._counter = counter
        self._key = key

    def inc(self, amount: float = 1) -> None:
        self._counter._add(self._key, amount)


class Counter(_Metric):
    """A monotonically increasing value, optionally split by labels."""

    kind = "counter"

    def __init__(self, name: str, help: str, labelnames: Sequence[str] = ()) -> None:
        super().__init__(name, help, labelnames)
        self._values: dict[tuple[str, ...], float] = {} if labelnames else {(): 0.0}

    def labels(self, *args: str) -> _CounterChild:
        key = self._key(args)
        with self._lock:
            self._values.setdefault(key, 0.0)
        return _CounterChild(self, key)

    def inc(self, amount: float = 1) -> None:
        self._add(self._key(()), amount)

    def _add(self, key: tuple[str, ...], amount: float) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease")
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, *args: str) -> float:
        return self._values.get(self._key(args), 0.0)

    def samples(self) -> Iterator[str]:
        with self._lock:
            items = sorted(self._values.items())
        for key, val in items:
            yield f"{self.name}{_label_text(self._sorted_pairs(key))} {_format_value(val)}"


class Gauge(_Metric):
    """A single value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self.value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self.value = float(value)

    def samples(self) -> Iterator[str]:
        yield f"{self.name} {_format_value(self.value)}"


class _HistogramChild:
    def __init__(self, histogram: Histogram, key: tuple[str, ...]) -> None:
        self._histogram = histogram
        self._key = key

    def observe(self, value: float) -> None:
        self._histogram._observe(self._key, value)


class Histogram(_Metric):
    """Observations counted into cumulative buckets, optionally split by labels."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        labelnames: Sequence[str] = (),
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, help, labelnames)
        self.buckets = tuple(sorted(float(b) for b in buckets))
        self._data: dict[tuple[str, ...], tuple[list[int], float, int]] = {}
        if not labelnames:
            self._data[()] = ([0] * len(self.buckets), 0.0, 0)

    def labels(self, *args: str) -> _HistogramChild:
        key = self._key(args)
        with self._lock:
            self._data.setdefault(key, ([0] * len(self.buckets), 0.0, 0))
        return _HistogramChild(self, key)

    def observe(self, value: float) -> None:
        self._observe(self._key(()), value)

    def _observe(self, key: tuple[str, ...], value: float) -> None:
        with self._lock:
            counts, total, count = self._data.get(key, ([0] * len(self.buckets), 0.0, 0))
            counts = [c + 1 if value <= bound else c for c, bound in zip(counts, self.buckets)]
            self._data[key] = (counts, total + value, count + 1)

    def samples(self) -> Iterator[str]:
        with self._lock:
            items = sorted(self._data.items())
        for key, (counts, total, count) in items:
            pairs = self._sorted_pairs(key)
            for bound, c in zip(self.buckets, counts):
                labels = _label_text(pairs + [("le", _format_value(bound))])
                yield f"{self.name}_bucket{labels} {c}"
            yield f"{self.name}_bucket{_label_text(pairs + [('le', '+Inf')])} {count}"
            yield f"{self.name}_sum{_label_text(pairs)} {_format_value(total)}"
            yield f"{self.name}_count{_label_text(pairs)} {count}"


class Registry:
    """A set of metrics with unique names that can be exposed as text."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, *args: _Metric) -> None:
        with self._lock:
            for metric in args:
                if metric.name in self._metrics:
                    raise ValueError(f"duplicate metrics collector registration: {metric.name}")
            for metric in args:
                self._metrics[metric.name] = metric

    def expose(self, *args: str) -> str:
        """Text exposition of the named metrics, or of all when none are named."""
        with self._lock:
            metrics = sorted(self._metrics.items())
        wanted = set(args)
        return "".join(m.expose() for name, m in metrics if not wanted or name in wanted)


DEFAULT_REGISTRY = Registry()

_PREFIX = "insider_messaging_"


class Metrics:
    """The application's metrics, registered on one registry."""

    def __init__(self, registry: Registry | None = None) -> None:
        self.registry = DEFAULT_REGISTRY if registry is None else registry
        p = _PREFIX
        self.messages_total = Counter(
            p + "messages_total", "Total number of messages processed by status", ["status"])
        self.messages_processed = Counter(
            p + "messages_processed_total", "Total number of messages processed by result", ["result"])
        self.message_processing_duration = Histogram(
            p + "message_processing_duration_seconds", "Time spent processing messages", ["operation"])
        self.messages_in_queue = Gauge(p + "messages_in_queue", "Current number of messages in queue")
        self.webhook_requests_total = Counter(
            p + "webhook_requests_total", "Total number of webhook requests by status code", ["status_code"])
        self.webhook_request_duration = Histogram(
            p + "webhook_request_duration_seconds", "Time spent on webhook requests", ["status_code"],
            buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10])
        self.webhook_retries = Counter(
            p + "webhook_retries_total", "Total number of webhook retry attempts", ["reason"])
        self.database_connections_active = Gauge(
            p + "database_connections_active", "Number of active database connections")
        self.database_query_duration = Histogram(
            p + "database_query_duration_seconds", "Time spent on database queries", ["operation"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1])
        self.database_queries_total = Counter(
            p + "database_queries_total", "Total number of database queries by operation and result",
            ["operation", "result"])
        self.cache_hits_total = Counter(p + "cache_hits_total", "Total number of cache hits", ["operation"])
        self.cache_misses_total = Counter(
            p + "cache_misses_total", "Total number of cache misses", ["operation"])
        self.cache_operation_duration = Histogram(
            p + "cache_operation_duration_seconds", "Time spent on cache operations", ["operation"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1])
        self.http_requests_total = Counter(
            p + "http_requests_total", "Total number of HTTP requests by method and status code",
            ["method", "status_code", "endpoint"])
        self.http_request_duration = Histogram(
            p + "http_request_duration_seconds", "Time spent on HTTP requests", ["method", "endpoint"],
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5])
        self.active_connections = Gauge(p + "active_connections", "Number of active HTTP connections")

        self.registry.register(
            self.messages_total, self.messages_processed, self.message_processing_duration,
            self.messages_in_queue, self.webhook_requests_total, self.webhook_request_duration,
            self.webhook_retries, self.database_connections_active, self.database_query_duration,
            self.database_queries_total, self.cache_hits_total, self.cache_misses_total,
            self.cache_operation_duration, self.http_requests_total, self.http_request_duration,
            self.active_connections,
        )

    def handler(self) -> Callable:
        """A WSGI application serving the registry in text exposition format."""
        registry = self.registry

        def app(environ, start_response):
            body = registry.expose().encode("utf-8")
            start_response("200 OK", [
                ("Content-Type", "text/plain; version=0.0.4; charset=utf-8"),
                ("Content-Length", str(len(body))),
            ])
            return [body]

        return app

    def record_message_processed(self, result: str, duration: float | timedelta) -> None:
        self.messages_processed.labels(result).inc()
        self.message_processing_duration.labels("process").observe(_seconds(duration))

    def record_message_status(self, status: str) -> None:
        self.messages_total.labels(status).inc()

    def record_webhook_request(self, status_code: str, duration: float | timedelta) -> None:
        self.webhook_requests_total.labels(status_code).inc()
        self.webhook_request_duration.labels(status_code).observe(_seconds(duration))

    def record_webhook_retry(self, reason: str) -> None:
        self.webhook_retries.labels(reason).inc()

    def record_database_query(self, operation: str, result: str, duration: float | timedelta) -> None:
        self.database_queries_total.labels(operation, result).inc()
        self.database_query_duration.labels(operation).observe(_seconds(duration))

    def record_cache_hit(self, operation: str, duration: float | timedelta) -> None:
        self.cache_hits_total.labels(operation).inc()
        self.cache_operation_duration.labels(operation).observe(_seconds(duration))

    def record_cache_miss(self, operation: str) -> None:
        self.cache_misses_total.labels(operation).inc()

    def record_http_request(
        self, method: str, status_code: str, endpoint: str, duration: float | timedelta
    ) -> None:
        self.http_requests_total.labels(method, status_code, endpoint).inc()
        self.http_request_duration.labels(method, endpoint).observe(_seconds(duration))

    def set_messages_in_queue(self, count: float) -> None:
        self.messages_in_queue.set(count)

    def set_database_connections(self, count: float) -> None:
        self.database_connections_active.set(count)

    def set_active_connections(self, count: float) -> None:
        self.active_connections.set(count)