"""In-process tracker metrics with Prometheus text exposition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, Tuple


class TrackerMetrics:
    """Thread-safe counters for segment processing."""

    SEGMENT_DURATION_BUCKETS = (
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Counters
        self._segments_total: Dict[Tuple[str, str], int] = defaultdict(int)
        self._entities_total: Dict[Tuple[str, str], int] = defaultdict(int)
        self._fallbacks_total: int = 0

        # Histogram (cumulative bucket counts)
        self._duration_bucket_counts: list[int] = [0 for _ in self.SEGMENT_DURATION_BUCKETS]
        self._duration_sum: float = 0.0
        self._duration_count: int = 0

    def reset(self) -> None:
        """Reset all metrics (used by tests)."""
        with self._lock:
            self._segments_total.clear()
            self._entities_total.clear()
            self._fallbacks_total = 0
            self._duration_bucket_counts = [0 for _ in self.SEGMENT_DURATION_BUCKETS]
            self._duration_sum = 0.0
            self._duration_count = 0

    def record_segment(self, source: str, strategy: str, duration_seconds: float) -> None:
        """Count one processed segment (``source`` is narrative or generator)."""
        duration = max(0.0, float(duration_seconds))
        with self._lock:
            self._segments_total[(source or "narrative", strategy or "none")] += 1
            for idx, upper_bound in enumerate(self.SEGMENT_DURATION_BUCKETS):
                if duration <= upper_bound:
                    self._duration_bucket_counts[idx] += 1
            self._duration_sum += duration
            self._duration_count += 1

    def record_entity(self, kind: str, action: str, count: int = 1) -> None:
        with self._lock:
            self._entities_total[(kind.upper(), action.upper())] += max(0, int(count))

    def inc_fallback(self, count: int = 1) -> None:
        with self._lock:
            self._fallbacks_total += max(0, int(count))

    def snapshot(self) -> Dict[str, Any]:
        """Take an immutable snapshot for exposition."""
        with self._lock:
            return {
                "segments_total": dict(self._segments_total),
                "entities_total": dict(self._entities_total),
                "fallbacks_total": int(self._fallbacks_total),
                "duration_bucket_counts": list(self._duration_bucket_counts),
                "duration_sum": float(self._duration_sum),
                "duration_count": int(self._duration_count),
            }

    def render_prometheus(self) -> str:
        """Render snapshot in Prometheus exposition format (text/plain)."""
        snap = self.snapshot()
        lines: list[str] = []

        lines.append("# HELP entity_tracker_segments_total Segments processed.")
        lines.append("# TYPE entity_tracker_segments_total counter")
        for (source, strategy), count in sorted(snap["segments_total"].items()):
            lines.append(
                "entity_tracker_segments_total"
                f'{{source="{_label_escape(source)}",strategy="{_label_escape(strategy)}"}} '
                f"{int(count)}"
            )

        lines.append("# HELP entity_tracker_entities_total Entities created or updated.")
        lines.append("# TYPE entity_tracker_entities_total counter")
        for (kind, action), count in sorted(snap["entities_total"].items()):
            lines.append(
                "entity_tracker_entities_total"
                f'{{kind="{_label_escape(kind)}",action="{_label_escape(action)}"}} '
                f"{int(count)}"
            )

        lines.append("# HELP entity_tracker_extraction_fallbacks_total Extractions served by the regex fallback.")
        lines.append("# TYPE entity_tracker_extraction_fallbacks_total counter")
        lines.append(f"entity_tracker_extraction_fallbacks_total {snap['fallbacks_total']}")

        lines.append("# HELP entity_tracker_segment_duration_seconds Segment processing latency in seconds.")
        lines.append("# TYPE entity_tracker_segment_duration_seconds histogram")
        for upper_bound, bucket_value in zip(
            self.SEGMENT_DURATION_BUCKETS, snap["duration_bucket_counts"]
        ):
            lines.append(
                "entity_tracker_segment_duration_seconds_bucket"
                f'{{le="{_format_bucket(upper_bound)}"}} {int(bucket_value)}'
            )
        lines.append(
            f'entity_tracker_segment_duration_seconds_bucket{{le="+Inf"}} {snap["duration_count"]}'
        )
        lines.append(
            f"entity_tracker_segment_duration_seconds_sum {_format_float(snap['duration_sum'])}"
        )
        lines.append(f"entity_tracker_segment_duration_seconds_count {snap['duration_count']}")

        return "\n".join(lines) + "\n"


collector = TrackerMetrics()


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()


def _label_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_bucket(value: float) -> str:
    return f"{float(value):g}"


def _format_float(value: float) -> str:
    text = f"{float(value):.9f}".rstrip("0").rstrip(".")
    return text if text else "0"
