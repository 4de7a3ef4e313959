"""Prometheus metrics for Capsulate.

Every metric is labelled by ``category`` (one of ``MetricCategory``),
``operation`` and ``agent_id``.  The manager and the monitor only emit;
exposition happens through the REST ``/metrics`` endpoint or through the
JSON snapshots the CLI flushes after each invocation.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

LABELS = ["category", "operation", "agent_id"]


class MetricCategory(str, enum.Enum):
    GIT_OPS = "git_ops"
    CONTAINER_OPS = "container_ops"
    FILE_OPS = "file_ops"
    DEPENDENCY_OPS = "dependency_ops"
    RESOURCE_USAGE = "resource_usage"


class CapsulateMetrics:
    """Counters, gauges and durations on a dedicated collector registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.operations_total = Counter(
            "capsulate_operations_total",
            "Operations performed",
            LABELS,
            registry=self.registry,
        )
        self.errors_total = Counter(
            "capsulate_operation_errors_total",
            "Operations that raised",
            LABELS,
            registry=self.registry,
        )
        self.duration_seconds = Histogram(
            "capsulate_operation_duration_seconds",
            "Operation duration in seconds",
            LABELS,
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
            registry=self.registry,
        )
        self.gauge = Gauge(
            "capsulate_gauge",
            "Last observed value (resource usage, counts)",
            LABELS,
            registry=self.registry,
        )

    # ── Emission ─────────────────────────────────────────────────────────

    def record_count(
        self, category: MetricCategory, operation: str, count: int = 1, agent_id: str = ""
    ) -> None:
        self.operations_total.labels(category.value, operation, agent_id).inc(count)

    def record_error(self, category: MetricCategory, operation: str, agent_id: str = "") -> None:
        self.errors_total.labels(category.value, operation, agent_id).inc()

    def record_gauge(
        self, category: MetricCategory, operation: str, value: float, agent_id: str = ""
    ) -> None:
        self.gauge.labels(category.value, operation, agent_id).set(value)

    def observe_duration(
        self, category: MetricCategory, operation: str, seconds: float, agent_id: str = ""
    ) -> None:
        self.duration_seconds.labels(category.value, operation, agent_id).observe(seconds)

    @contextmanager
    def operation_timer(
        self, category: MetricCategory, operation: str, agent_id: str = ""
    ) -> Iterator[None]:
        """Count, time and (on exception) record an error for the wrapped block."""
        start = time.monotonic()
        try:
            yield
        except BaseException:
            self.record_error(category, operation, agent_id)
            raise
        finally:
            self.observe_duration(category, operation, time.monotonic() - start, agent_id)
            self.record_count(category, operation, 1, agent_id)

    # ── Reading ──────────────────────────────────────────────────────────

    def summary(self) -> dict[str, dict[str, dict[str, float]]]:
        """Totals per category and operation, summed over agents.

        Shape: ``{"counters": {cat: {op: n}}, "errors": {...},
        "durations": {cat: {op: total_seconds}}, "gauges": {cat: {op: last}}}``.
        """
        out: dict[str, dict[str, dict[str, float]]] = {
            "counters": {},
            "errors": {},
            "durations": {},
            "gauges": {},
        }
        sample_map = {
            "capsulate_operations_total": "counters",
            "capsulate_operation_errors_total": "errors",
            "capsulate_operation_duration_seconds_sum": "durations",
            "capsulate_gauge": "gauges",
        }
        for family in self.registry.collect():
            for sample in family.samples:
                section = sample_map.get(sample.name)
                if section is None:
                    continue
                cat = sample.labels.get("category", "")
                op = sample.labels.get("operation", "")
                bucket = out[section].setdefault(cat, {})
                if section == "gauges":
                    key = f"{op}.{sample.labels['agent_id']}" if sample.labels.get("agent_id") else op
                    bucket[key] = sample.value
                else:
                    bucket[op] = bucket.get(op, 0) + sample.value
        return out

    def exposition(self) -> bytes:
        """Prometheus text format for the ``/metrics`` endpoint."""
        return generate_latest(self.registry)

    # ── Persistence ──────────────────────────────────────────────────────

    def flush(self, directory: Path) -> Path | None:
        """Write the current summary as ``metrics-<timestamp>.json``.

        Returns the written path, or None when nothing was recorded.
        """
        summary = self.summary()
        if not any(summary.values()):
            return None
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = directory / f"metrics-{stamp}.json"
        path.write_text(json.dumps(summary, indent=2, sort_keys=True))
        logger.debug("Flushed metrics to %s", path)
        return path


def load_flushed(directory: Path) -> dict[str, dict[str, dict[str, float]]]:
    """Merge flushed snapshots: counters/errors/durations add, gauges keep the latest."""
    merged: dict[str, dict[str, dict[str, float]]] = {
        "counters": {},
        "errors": {},
        "durations": {},
        "gauges": {},
    }
    if not directory.is_dir():
        return merged
    for path in sorted(directory.glob("metrics-*.json")):
        try:
            snapshot = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning("Skipping unreadable metrics snapshot %s", path)
            continue
        for section, categories in snapshot.items():
            target = merged.setdefault(section, {})
            for cat, ops in categories.items():
                bucket = target.setdefault(cat, {})
                for op, value in ops.items():
                    if section == "gauges":
                        bucket[op] = value
                    else:
                        bucket[op] = bucket.get(op, 0) + value
    return merged


def clear_flushed(directory: Path) -> int:
    """Delete flushed snapshots; returns how many were removed."""
    removed = 0
    if directory.is_dir():
        for path in directory.glob("metrics-*.json"):
            path.unlink()
            removed += 1
    return removed
