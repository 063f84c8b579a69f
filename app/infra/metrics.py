# app/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Histograms keep only the most recent samples so long-running pollers
# don't grow memory without bound.
_MAX_SAMPLES = 5000


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Recent distribution of values (e.g. flow run durations)"""
    values: deque = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))

    def observe(self, value: float) -> None:
        self.values.append(value)

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}

        ordered = sorted(self.values)
        count = len(ordered)
        p95 = ordered[min(int(count * 0.95), count - 1)]

        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p95": p95,
        }


class MetricsCollector:
    """In-process counters and histograms, keyed by name plus sorted labels."""

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager recording elapsed seconds into a histogram"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self.start_time, **self.labels)


class AppMetrics:
    """Automation engine metrics"""

    @staticmethod
    def event_received(event_type: str) -> None:
        inc_counter("events_received_total", type=event_type)

    @staticmethod
    def flow_matched() -> None:
        inc_counter("flows_matched_total")

    @staticmethod
    def flow_run_finished(result: str) -> None:
        inc_counter("flow_runs_total", result=result)

    @staticmethod
    def node_executed(node_type: str, status: str) -> None:
        inc_counter("nodes_executed_total", type=node_type, status=status)

    @staticmethod
    def paused_resume() -> None:
        inc_counter("paused_resumes_total")

    @staticmethod
    def gate_denied(reason: str | None) -> None:
        inc_counter("gate_denied_total", reason=reason or "unknown")

    @staticmethod
    def gate_fail_open() -> None:
        inc_counter("gate_fail_open_total")

    @staticmethod
    def outbound_message(channel: str, status: str) -> None:
        inc_counter("outbound_messages_total", channel=channel, status=status)

    @staticmethod
    def ai_generation(status: str) -> None:
        inc_counter("ai_generation_total", status=status)

    @staticmethod
    def poll_cycle(status: str, new_messages: int = 0) -> None:
        inc_counter("poll_cycles_total", status=status)
        if new_messages:
            inc_counter("poll_messages_total", amount=new_messages)

    @staticmethod
    def track_flow_run() -> Timer:
        return Timer("flow_run_seconds")
