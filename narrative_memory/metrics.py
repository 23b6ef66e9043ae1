"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, Tuple

_PREFIX = "narrative_memory"


class MetricsCollector:
    """Thread-safe collector for HTTP, ingestion and retrieval instrumentation."""

    REQUEST_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Counters
        self._requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self._ingest_total: Dict[str, int] = defaultdict(int)
        self._retrievals_total: Dict[str, int] = defaultdict(int)
        self._out_of_order_total: int = 0
        self._degraded_retrievals_total: int = 0

        # Histogram (cumulative bucket counts)
        self._duration_buckets: Dict[str, list[int]] = {}
        self._duration_sum: Dict[str, float] = defaultdict(float)
        self._duration_count: Dict[str, int] = defaultdict(int)

        # Gauges
        self._facts_by_status: Dict[str, int] = {}
        self._entities_total: int = 0

    def reset(self) -> None:
        """Reset all metrics (used by tests)."""
        with self._lock:
            self._requests_total.clear()
            self._ingest_total.clear()
            self._retrievals_total.clear()
            self._out_of_order_total = 0
            self._degraded_retrievals_total = 0
            self._duration_buckets.clear()
            self._duration_sum.clear()
            self._duration_count.clear()
            self._facts_by_status = {}
            self._entities_total = 0

    def record_request(self, method: str, path: str, status: int, duration_seconds: float) -> None:
        method_norm = (method or "GET").upper()
        path_norm = path or "/"
        duration = max(0.0, float(duration_seconds))

        with self._lock:
            self._requests_total[(method_norm, path_norm, str(status))] += 1

            buckets = self._duration_buckets.setdefault(
                path_norm, [0 for _ in self.REQUEST_DURATION_BUCKETS]
            )
            for idx, upper_bound in enumerate(self.REQUEST_DURATION_BUCKETS):
                if duration <= upper_bound:
                    buckets[idx] += 1
            self._duration_sum[path_norm] += duration
            self._duration_count[path_norm] += 1

    def inc_ingest(self, outcome: str, count: int = 1) -> None:
        with self._lock:
            self._ingest_total[outcome] += max(0, int(count))

    def inc_out_of_order(self) -> None:
        with self._lock:
            self._out_of_order_total += 1

    def inc_retrieval(self, mode: str, degraded: bool = False) -> None:
        with self._lock:
            self._retrievals_total[mode] += 1
            if degraded:
                self._degraded_retrievals_total += 1

    def set_store_gauges(self, *, facts_by_status: Dict[str, int], entities_total: int) -> None:
        with self._lock:
            self._facts_by_status = {str(k): max(0, int(v)) for k, v in facts_by_status.items()}
            self._entities_total = max(0, int(entities_total))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requests_total": dict(self._requests_total),
                "duration_buckets": {p: list(c) for p, c in self._duration_buckets.items()},
                "duration_sum": dict(self._duration_sum),
                "duration_count": dict(self._duration_count),
                "ingest_total": dict(self._ingest_total),
                "retrievals_total": dict(self._retrievals_total),
                "out_of_order_total": self._out_of_order_total,
                "degraded_retrievals_total": self._degraded_retrievals_total,
                "facts_by_status": dict(self._facts_by_status),
                "entities_total": self._entities_total,
            }

    def render_prometheus(self) -> str:
        """Render snapshot in Prometheus exposition format (text/plain)."""
        snap = self.snapshot()
        lines: list[str] = []

        def header(name: str, kind: str, help_text: str) -> None:
            lines.append(f"# HELP {_PREFIX}_{name} {help_text}")
            lines.append(f"# TYPE {_PREFIX}_{name} {kind}")

        header("requests_total", "counter", "Total HTTP requests processed.")
        for (method, path, status), count in sorted(snap["requests_total"].items()):
            lines.append(
                f"{_PREFIX}_requests_total"
                f'{{method="{_label_escape(method)}",path="{_label_escape(path)}",status="{_label_escape(status)}"}} '
                f"{int(count)}"
            )

        header("request_duration_seconds", "histogram", "HTTP request latency in seconds.")
        for path in sorted(snap["duration_buckets"]):
            label = _label_escape(path)
            for upper_bound, value in zip(self.REQUEST_DURATION_BUCKETS, snap["duration_buckets"][path]):
                lines.append(
                    f'{_PREFIX}_request_duration_seconds_bucket{{path="{label}",le="{upper_bound:g}"}} {int(value)}'
                )
            count = int(snap["duration_count"].get(path, 0))
            lines.append(f'{_PREFIX}_request_duration_seconds_bucket{{path="{label}",le="+Inf"}} {count}')
            lines.append(
                f'{_PREFIX}_request_duration_seconds_sum{{path="{label}"}} '
                f"{_format_float(snap['duration_sum'].get(path, 0.0))}"
            )
            lines.append(f'{_PREFIX}_request_duration_seconds_count{{path="{label}"}} {count}')

        header("ingest_total", "counter", "Ingested candidate facts, by outcome.")
        for outcome, count in sorted(snap["ingest_total"].items()):
            lines.append(f'{_PREFIX}_ingest_total{{outcome="{_label_escape(outcome)}"}} {int(count)}')

        header("out_of_order_total", "counter", "Supersessions where the new fact predates the old one.")
        lines.append(f"{_PREFIX}_out_of_order_total {snap['out_of_order_total']}")

        header("retrievals_total", "counter", "Retrievals served, by mode.")
        for mode, count in sorted(snap["retrievals_total"].items()):
            lines.append(f'{_PREFIX}_retrievals_total{{mode="{_label_escape(mode)}"}} {int(count)}')

        header("degraded_retrievals_total", "counter", "Ranked retrievals served without a query embedding.")
        lines.append(f"{_PREFIX}_degraded_retrievals_total {snap['degraded_retrievals_total']}")

        header("facts", "gauge", "Stored facts, by status.")
        for status, total in sorted(snap["facts_by_status"].items()):
            lines.append(f'{_PREFIX}_facts{{status="{_label_escape(status)}"}} {int(total)}')

        header("entities", "gauge", "Known entities.")
        lines.append(f"{_PREFIX}_entities {snap['entities_total']}")

        return "\n".join(lines) + "\n"


collector = MetricsCollector()


def record_request_metric(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    collector.record_request(method=method, path=path, status=status, duration_seconds=duration_seconds)


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()


def _label_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_float(value: float) -> str:
    text = f"{float(value):.9f}".rstrip("0").rstrip(".")
    return text if text else "0"
