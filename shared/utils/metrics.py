"""
Metrics and performance monitoring for the business-context analysis library.

Counters, gauges, histograms and timers are advisory only: nothing in the
pipeline reads them to make a decision. Each metric owns its own lock, so
concurrent analyses never contend on a lock that spans the whole registry.
"""

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager, contextmanager
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Union

import psutil


class Counter:
    """A counter metric that only increases."""

    def __init__(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None):
        self.name = name
        self.description = description
        self.tags = tags or {}
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("Counter can only be incremented by positive values")
        with self._lock:
            self._value += amount

    def get_value(self) -> int:
        return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


class Gauge:
    """A gauge metric that can go up and down."""

    def __init__(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None):
        self.name = name
        self.description = description
        self.tags = tags or {}
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, value: Union[int, float]) -> None:
        with self._lock:
            self._value = float(value)

    def get_value(self) -> float:
        return self._value


class Histogram:
    """A histogram metric for tracking value distributions."""

    def __init__(self, name: str, description: str = "", buckets: Optional[List[float]] = None,
                 tags: Optional[Dict[str, str]] = None):
        self.name = name
        self.description = description
        self.tags = tags or {}
        self.buckets = buckets or [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float]) -> None:
        value = float(value)
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_count(self) -> int:
        return self._count

    def get_sum(self) -> float:
        return self._sum

    def get_mean(self) -> float:
        if self._count == 0:
            return 0.0
        return self._sum / self._count

    def reset(self) -> None:
        with self._lock:
            self._bucket_counts = {bucket: 0 for bucket in self.buckets}
            self._sum = 0.0
            self._count = 0


class Timer:
    """A timer metric for measuring durations."""

    def __init__(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None):
        self.name = name
        self.description = description
        self.tags = tags or {}
        self._histogram = Histogram(f"{name}_duration_seconds", description, tags=tags)

    def record(self, duration_seconds: float) -> None:
        self._histogram.observe(duration_seconds)

    @contextmanager
    def time_context(self):
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self._histogram.observe(time.perf_counter() - start_time)

    @asynccontextmanager
    async def time_async_context(self):
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self._histogram.observe(time.perf_counter() - start_time)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'count': self._histogram.get_count(),
            'sum': self._histogram.get_sum(),
            'mean': self._histogram.get_mean(),
        }

    def reset(self) -> None:
        self._histogram.reset()


class MetricsCollector:
    """Registry of named metrics."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._timers: Dict[str, Timer] = {}
        # Guards registration only; updates go through each metric's own lock
        self._registry_lock = threading.Lock()

    def _get_or_create(self, registry: Dict[str, Any], name: str, factory: Callable[[], Any]):
        metric = registry.get(name)
        if metric is None:
            with self._registry_lock:
                metric = registry.get(name)
                if metric is None:
                    metric = factory()
                    registry[name] = metric
        return metric

    def counter(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None) -> Counter:
        return self._get_or_create(self._counters, name, lambda: Counter(name, description, tags))

    def gauge(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None) -> Gauge:
        return self._get_or_create(self._gauges, name, lambda: Gauge(name, description, tags))

    def histogram(self, name: str, description: str = "", buckets: Optional[List[float]] = None,
                  tags: Optional[Dict[str, str]] = None) -> Histogram:
        return self._get_or_create(self._histograms, name, lambda: Histogram(name, description, buckets, tags))

    def timer(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None) -> Timer:
        return self._get_or_create(self._timers, name, lambda: Timer(name, description, tags))

    def get_summary(self) -> Dict[str, Any]:
        return {
            'counters': {name: c.get_value() for name, c in self._counters.items()},
            'gauges': {name: g.get_value() for name, g in self._gauges.items()},
            'timers': {name: t.get_statistics() for name, t in self._timers.items()},
        }

    def reset_all(self) -> None:
        for counter in list(self._counters.values()):
            counter.reset()
        for timer in list(self._timers.values()):
            timer.reset()
        for histogram in list(self._histograms.values()):
            histogram.reset()


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def track_performance(metric_name: Optional[str] = None, tags: Optional[Dict[str, str]] = None):
    """
    Decorator to track function performance.

    Usage:
        @track_performance(tags={"operation": "classify_intent"})
        async def classify_intent(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        name = metric_name or f"{func.__module__}.{func.__qualname__}"

        def _metrics():
            collector = get_metrics_collector()
            return (
                collector.timer(f"{name}_duration", f"Execution time for {name}", tags),
                collector.counter(f"{name}_calls", f"Call count for {name}", tags),
                collector.counter(f"{name}_errors", f"Error count for {name}", tags),
            )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            perf_timer, perf_counter, error_counter = _metrics()
            perf_counter.increment()
            async with perf_timer.time_async_context():
                try:
                    return await func(*args, **kwargs)
                except Exception:
                    error_counter.increment()
                    raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            perf_timer, perf_counter, error_counter = _metrics()
            perf_counter.increment()
            with perf_timer.time_context():
                try:
                    return func(*args, **kwargs)
                except Exception:
                    error_counter.increment()
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def get_system_metrics() -> Dict[str, float]:
    """Get current process and host metrics for reporting."""
    try:
        memory = psutil.virtual_memory()
        process = psutil.Process()
        return {
            'cpu_percent': psutil.cpu_percent(interval=None),
            'memory_percent': memory.percent,
            'memory_available_gb': memory.available / (1024 ** 3),
            'process_rss_mb': process.memory_info().rss / (1024 ** 2),
        }
    except psutil.Error as e:
        logging.getLogger(__name__).error(f"Error collecting system metrics: {e}")
        return {}
