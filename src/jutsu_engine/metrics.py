"""Prometheus text-format metrics for seal recognition and jutsu progression.

Tracked metrics:
- jutsu_engine_frames_total (counter)
- jutsu_engine_seals_total (counter, by seal)
- jutsu_engine_steps_total (counter, by jutsu)
- jutsu_engine_activations_total (counter, by jutsu)
- jutsu_engine_verifications_total (counter, by outcome)
- jutsu_engine_remote_retries_total (counter, by reason)
- jutsu_engine_classification_seconds (histogram)
- jutsu_engine_chakra (gauge)
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class _Histogram:
    """Cumulative-bucket histogram."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float):
        with self._lock:
            self.count += 1
            self.sum += value
            for i, b in enumerate(self.buckets):
                if value <= b:
                    self.bucket_counts[i] += 1
                    break

    def render(self, name: str, help_text: str) -> list[str]:
        lines = [f"# HELP {name} {help_text}", f"# TYPE {name} histogram"]
        with self._lock:
            cumulative = 0
            for b, n in zip(self.buckets, self.bucket_counts):
                cumulative += n
                lines.append(f'{name}_bucket{{le="{b}"}} {cumulative}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{name}_sum {self.sum:.6f}")
            lines.append(f"{name}_count {self.count}")
        return lines


def _counter(name: str, help_text: str, label: str, counts: Counter) -> list[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, count in sorted(counts.items()):
        lines.append(f'{name}{{{label}="{key}"}} {count}')
    return lines


class MetricsCollector:
    """Collects engine counters and renders them for a /metrics endpoint."""

    def __init__(self):
        self._seals: Counter = Counter()
        self._steps: Counter = Counter()
        self._activations: Counter = Counter()
        self._verifications: Counter = Counter()
        self._retries: Counter = Counter()
        self._frames_total = 0
        self._chakra = 0.0
        self._lock = threading.Lock()
        # 1 ms (geometry) up to 30 s (remote round trip with retries)
        self._latency = _Histogram([0.001, 0.005, 0.010, 0.033, 0.100, 0.250, 1.0, 5.0, 30.0])
        self._start_time = time.time()

    def record_classification(self, seal: str | None, latency_seconds: float):
        with self._lock:
            self._frames_total += 1
            if seal:
                self._seals[seal] += 1
        self._latency.observe(latency_seconds)

    def record_step(self, jutsu_id: str):
        with self._lock:
            self._steps[jutsu_id] += 1

    def record_activation(self, jutsu_id: str):
        with self._lock:
            self._activations[jutsu_id] += 1

    def record_verification(self, outcome: str):
        """outcome: ``match``, ``no_match`` or ``stale``."""
        with self._lock:
            self._verifications[outcome] += 1

    def record_retry(self, reason: str):
        with self._lock:
            self._retries[reason] += 1

    def set_chakra(self, value: float):
        self._chakra = value

    def render(self) -> str:
        lines = [
            "# HELP jutsu_engine_uptime_seconds Time since engine start",
            "# TYPE jutsu_engine_uptime_seconds gauge",
            f"jutsu_engine_uptime_seconds {time.time() - self._start_time:.1f}",
            "",
            "# HELP jutsu_engine_frames_total Classification calls made",
            "# TYPE jutsu_engine_frames_total counter",
            f"jutsu_engine_frames_total {self._frames_total}",
            "",
        ]
        with self._lock:
            lines += _counter("jutsu_engine_seals_total", "Seals recognised by label", "seal", self._seals)
            lines.append("")
            lines += _counter("jutsu_engine_steps_total", "Sequence steps completed", "jutsu", self._steps)
            lines.append("")
            lines += _counter("jutsu_engine_activations_total", "Jutsu activations", "jutsu", self._activations)
            lines.append("")
            lines += _counter(
                "jutsu_engine_verifications_total", "Remote verification outcomes", "outcome",
                self._verifications,
            )
            lines.append("")
            lines += _counter(
                "jutsu_engine_remote_retries_total", "Remote verification retries", "reason",
                self._retries,
            )
            lines.append("")

        lines += self._latency.render(
            "jutsu_engine_classification_seconds", "Classification latency in seconds"
        )
        lines += [
            "",
            "# HELP jutsu_engine_chakra Current chakra level",
            "# TYPE jutsu_engine_chakra gauge",
            f"jutsu_engine_chakra {self._chakra:.1f}",
        ]
        return "\n".join(lines) + "\n"

    @property
    def seal_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._seals)

    @property
    def activation_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._activations)
