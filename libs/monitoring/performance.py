"""
Performance monitoring for the retrieval pipeline.

Tracks per-stage latency, cache hit rates and gating counters. Every method
is a no-op when monitoring is disabled, so instrumentation costs nothing in
production unless CHAT_PERFORMANCE_LOGGING is turned on.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

STAGES = ("embedding", "db_query", "reranking", "llm", "sqg")
CACHE_TYPES = ("embedding", "sqg", "cross_encoder", "llm_rerank")


@dataclass
class Timer:
    """Handle returned by start_timer."""

    label: str
    start: float


@dataclass
class PerformanceMetrics:
    """Raw counters; latencies are cumulative milliseconds."""

    total_queries: int = 0
    total_latency: float = 0.0
    stage_latency: Dict[str, float] = field(default_factory=lambda: {s: 0.0 for s in STAGES})
    cache_hits: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in CACHE_TYPES})
    cache_misses: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in CACHE_TYPES})
    early_terminations: int = 0
    simple_query_skips: int = 0


def _percent(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole > 0 else 0


class PerformanceMonitor:
    """Counter store for pipeline instrumentation."""

    def __init__(self, enabled: bool = False):
        # Resolved once; flipping the env var later has no effect
        self.enabled = enabled
        self.metrics = PerformanceMetrics()

    def start_timer(self, label: str) -> Optional[Timer]:
        if not self.enabled:
            return None
        return Timer(label=label, start=time.perf_counter())

    def end_timer(self, timer: Optional[Timer]) -> float:
        """Stop a timer and add its duration (ms) to the stage total."""
        if not self.enabled or timer is None:
            return 0
        duration = (time.perf_counter() - timer.start) * 1000.0
        latency = self.metrics.stage_latency
        latency[timer.label] = latency.get(timer.label, 0.0) + duration
        return duration

    def record_cache_hit(self, cache_type: str) -> None:
        if not self.enabled:
            return
        hits = self.metrics.cache_hits
        hits[cache_type] = hits.get(cache_type, 0) + 1

    def record_cache_miss(self, cache_type: str) -> None:
        if not self.enabled:
            return
        misses = self.metrics.cache_misses
        misses[cache_type] = misses.get(cache_type, 0) + 1

    def record_early_termination(self) -> None:
        if not self.enabled:
            return
        self.metrics.early_terminations += 1

    def record_simple_query_skip(self) -> None:
        if not self.enabled:
            return
        self.metrics.simple_query_skips += 1

    def record_query(self, total_latency_ms: float) -> None:
        if not self.enabled:
            return
        self.metrics.total_queries += 1
        self.metrics.total_latency += total_latency_ms

    def get_cache_hit_rate(self, cache_type: str) -> int:
        """Hit rate for one cache type as a rounded percentage."""
        hits = self.metrics.cache_hits.get(cache_type, 0)
        misses = self.metrics.cache_misses.get(cache_type, 0)
        return _percent(hits, hits + misses)

    def get_stats(self) -> Optional[Dict[str, Any]]:
        """Derived averages and rates, or None when disabled."""
        if not self.enabled:
            return None

        m = self.metrics
        queries = m.total_queries

        def average(total: float) -> int:
            return round(total / queries) if queries > 0 else 0

        cache_types = sorted(set(m.cache_hits) | set(m.cache_misses), key=_cache_order)
        return {
            "total_queries": queries,
            "average_latency": average(m.total_latency),
            "average_stage_latency": {stage: average(total) for stage, total in m.stage_latency.items()},
            "cache_hit_rates": {t: self.get_cache_hit_rate(t) for t in cache_types},
            "optimization_stats": {
                "early_terminations": m.early_terminations,
                "simple_query_skips": m.simple_query_skips,
                "early_termination_rate": _percent(m.early_terminations, queries),
                "simple_query_skip_rate": _percent(m.simple_query_skips, queries),
            },
        }

    def log_stats(self) -> None:
        if not self.enabled:
            return
        stats = self.get_stats()
        if stats:
            logger.info("Performance stats", **stats)

    def reset(self) -> None:
        self.metrics = PerformanceMetrics()


def _cache_order(cache_type: str):
    try:
        return (0, CACHE_TYPES.index(cache_type))
    except ValueError:
        return (1, cache_type)
