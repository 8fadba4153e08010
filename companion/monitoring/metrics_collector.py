"""In-process turn metrics with latency percentiles."""
import numpy as np
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from collections import defaultdict, deque


class MetricsCollector:
    """
    Collect per-process turn metrics.

    Tracks:
    - Turn counts by route, plus blocked turns
    - Latency distributions (p50, p95, p99) by route, over the most recent turns
    - Guard blocks by reason and output-guard issues
    - Triage fallbacks by reason
    - Upstream and persistence failures
    """

    def __init__(self, latency_window: int = 1000):
        self.latency_window = latency_window
        self.reset_metrics()

    def reset_metrics(self):
        """Reset all metrics to initial state."""
        now = datetime.now(timezone.utc).isoformat()
        self.metrics = {
            "total_turns": 0,
            "route_counts": defaultdict(int),
            "latencies": defaultdict(lambda: deque(maxlen=self.latency_window)),
            "input_blocks": defaultdict(int),
            "output_issues": defaultdict(int),
            "triage_fallbacks": defaultdict(int),
            "safety_floor_applied": 0,
            "content_replaced": 0,
            "upstream_failures": 0,
            "persistence_failures": 0,
            "start_time": now,
            "last_updated": now,
        }

    def _touch(self):
        self.metrics["last_updated"] = datetime.now(timezone.utc).isoformat()

    def record_turn(self, route: str, latency_ms: float):
        """Record a completed turn on a route."""
        self.metrics["total_turns"] += 1
        self.metrics["route_counts"][route] += 1
        self.metrics["latencies"][route].append(latency_ms)
        self._touch()

    def record_blocked(self, reason: str, latency_ms: float):
        """Record a turn short-circuited by the input guard."""
        self.metrics["total_turns"] += 1
        self.metrics["input_blocks"][reason] += 1
        self.metrics["latencies"]["blocked"].append(latency_ms)
        self._touch()

    def record_output_issues(self, issues, content_replaced: bool = False):
        for issue in issues:
            self.metrics["output_issues"][getattr(issue, "value", issue)] += 1
        if content_replaced:
            self.metrics["content_replaced"] += 1
        self._touch()

    def record_triage_fallback(self, reason: str):
        self.metrics["triage_fallbacks"][reason] += 1
        self._touch()

    def record_safety_floor(self):
        self.metrics["safety_floor_applied"] += 1
        self._touch()

    def record_upstream_failure(self):
        self.metrics["upstream_failures"] += 1
        self._touch()

    def record_persistence_failure(self):
        self.metrics["persistence_failures"] += 1
        self._touch()

    def get_latency_percentiles(self, route: Optional[str] = None) -> Dict[str, Dict[str, float]]:
        """
        Calculate latency percentiles.

        Args:
            route: Specific route to get percentiles for (or None for all)

        Returns:
            Dict with count, p50, p95, p99, mean, min, max per route
        """
        result = {}

        routes_to_process = [route] if route else list(self.metrics["latencies"].keys())

        for key in routes_to_process:
            latencies = list(self.metrics["latencies"].get(key, ()))

            if not latencies:
                result[key] = {
                    "count": 0,
                    "p50": 0.0,
                    "p95": 0.0,
                    "p99": 0.0,
                    "mean": 0.0,
                    "min": 0.0,
                    "max": 0.0
                }
            else:
                result[key] = {
                    "count": len(latencies),
                    "p50": float(np.percentile(latencies, 50)),
                    "p95": float(np.percentile(latencies, 95)),
                    "p99": float(np.percentile(latencies, 99)),
                    "mean": float(np.mean(latencies)),
                    "min": float(np.min(latencies)),
                    "max": float(np.max(latencies))
                }

        return result

    def get_crisis_rate(self) -> float:
        """Share of turns routed to crisis handling."""
        total = self.metrics["total_turns"]
        crisis = self.metrics["route_counts"].get("crisis", 0)
        return crisis / total if total > 0 else 0.0

    def get_summary(self) -> Dict[str, Any]:
        """Get comprehensive metrics summary."""
        return {
            "overview": {
                "total_turns": self.metrics["total_turns"],
                "start_time": self.metrics["start_time"],
                "last_updated": self.metrics["last_updated"],
                "upstream_failures": self.metrics["upstream_failures"],
                "persistence_failures": self.metrics["persistence_failures"],
            },
            "route_distribution": dict(self.metrics["route_counts"]),
            "crisis_rate": round(self.get_crisis_rate(), 4),
            "latencies": self.get_latency_percentiles(),
            "safety": {
                "input_blocks": dict(self.metrics["input_blocks"]),
                "output_issues": dict(self.metrics["output_issues"]),
                "content_replaced": self.metrics["content_replaced"],
                "safety_floor_applied": self.metrics["safety_floor_applied"],
            },
            "triage_fallbacks": dict(self.metrics["triage_fallbacks"]),
        }


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
