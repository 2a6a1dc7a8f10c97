"""
voicestream - Streaming metrics

Process-lifetime counters and rolling latency samples for streamed
responses. One `MetricsAggregator` is created at startup and handed to the
orchestrator and the metrics routes; everything runs on one event loop, so
no locking is needed.
"""

import asyncio
import logging
import math
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

import psutil
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from .config import (
    METRICS_SAMPLE_LIMIT,
    RECENT_EVENTS_LIMIT,
    SESSION_STALE_AFTER_S,
    SESSION_SWEEP_INTERVAL_S,
)

logger = logging.getLogger(__name__)

ERROR_KINDS = ("generator", "tts", "network", "validation", "other")
CACHE_CLASSES = ("kb", "tts")
LATENCY_SERIES = ("firstToken", "firstAudio", "complete")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentile(samples: Iterable[float], p: float) -> int:
    """
    Nearest-rank percentile.

    The value at index ``ceil(p/100 * n) - 1`` of the sorted samples, clamped
    to the valid range and rounded. Empty input gives 0.
    """
    ordered = sorted(samples)
    if not ordered:
        return 0
    index = math.ceil((p / 100) * len(ordered)) - 1
    index = max(0, min(len(ordered) - 1, index))
    return _round_half_up(ordered[index])


def average(samples: Iterable[float]) -> int:
    values = list(samples)
    if not values:
        return 0
    return _round_half_up(sum(values) / len(values))


def hit_rate(hits: int, misses: int) -> float:
    total = hits + misses
    return round(hits / total * 100, 2) if total else 0.0


def format_uptime(milliseconds: float) -> str:
    seconds = int(milliseconds // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_percentage(value: float, decimals: int = 1) -> str:
    return f"{value:.{decimals}f}%"


def format_bytes(num_bytes: float) -> str:
    """1536 -> "1.5 KB"."""
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"
    for unit in ("KB", "MB", "GB"):
        num_bytes /= 1024
        if num_bytes < 1024 or unit == "GB":
            return f"{num_bytes:.1f} {unit}"
    return f"{num_bytes:.1f} GB"


class MetricsAggregator:
    """Counters, latency samples and recent events for streamed responses."""

    def __init__(
        self,
        sample_limit: int = METRICS_SAMPLE_LIMIT,
        recent_limit: int = RECENT_EVENTS_LIMIT,
        session_stale_after: float = SESSION_STALE_AFTER_S,
    ):
        self.sample_limit = sample_limit
        self.recent_limit = recent_limit
        self.session_stale_after = session_stale_after
        self._sweeper: Optional[asyncio.Task] = None
        self.reset(log=False)

    def reset(self, log: bool = True) -> None:
        self.total_requests = 0
        self.successful = 0
        self.failed = 0
        self.active = 0
        self.latency: Dict[str, Deque[float]] = {
            name: deque(maxlen=self.sample_limit) for name in LATENCY_SERIES
        }
        self.cache: Dict[str, Dict[str, int]] = {
            name: {"hits": 0, "misses": 0} for name in CACHE_CLASSES
        }
        self.errors: Dict[str, int] = {kind: 0 for kind in ERROR_KINDS}
        self.avg_response_size = 0.0
        self._sized_responses = 0
        self.total_tokens = 0
        self.total_audio_chunks = 0
        self.sessions: Dict[str, float] = {}
        self.events: Deque[Dict[str, Any]] = deque(maxlen=self.recent_limit)
        self.start_time = time.time()
        if log:
            logger.info("Streaming metrics reset")

    def record_success(
        self,
        session_id: Optional[str] = None,
        first_token_latency: Optional[float] = None,
        first_audio_latency: Optional[float] = None,
        duration: Optional[float] = None,
        word_count: Optional[int] = None,
        tokens: Optional[int] = None,
        audio_chunks: Optional[int] = None,
    ) -> None:
        self.total_requests += 1
        self.successful += 1

        if session_id:
            self.sessions[session_id] = time.time()

        for name, value in (
            ("firstToken", first_token_latency),
            ("firstAudio", first_audio_latency),
            ("complete", duration),
        ):
            if value is not None:
                # Whole milliseconds, so averages and percentiles stay within the samples
                self.latency[name].append(_round_half_up(value))

        if word_count is not None:
            self._sized_responses += 1
            self.avg_response_size += (word_count - self.avg_response_size) / self._sized_responses
        if tokens:
            self.total_tokens += tokens
        if audio_chunks:
            self.total_audio_chunks += audio_chunks

        self.add_event(
            "success",
            sessionId=session_id,
            firstTokenLatency=first_token_latency,
            firstAudioLatency=first_audio_latency,
            duration=duration,
            wordCount=word_count,
            tokens=tokens,
            audioChunks=audio_chunks,
        )

    def record_error(self, kind: str = "other", error: Optional[BaseException] = None) -> None:
        self.total_requests += 1
        self.failed += 1

        if kind not in self.errors:
            kind = "other"
        self.errors[kind] += 1

        self.add_event("error", errorType=kind, message=str(error) if error else "Unknown error")
        logger.warning(
            f"Stream error recorded: {kind} "
            f"(count={self.errors[kind]}, total_failed={self.failed})"
        )

    def _cache_class(self, cache_class: str) -> Dict[str, int]:
        return self.cache.setdefault(cache_class, {"hits": 0, "misses": 0})

    def record_cache_hit(self, cache_class: str) -> None:
        self._cache_class(cache_class)["hits"] += 1

    def record_cache_miss(self, cache_class: str) -> None:
        self._cache_class(cache_class)["misses"] += 1

    def update_active_count(self, count: int) -> None:
        self.active = max(0, count)

    def add_event(self, event_type: str, **data: Any) -> None:
        self.events.append({"type": event_type, "timestamp": int(time.time() * 1000), **data})

    def recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self.events)[-limit:]

    def prune_stale_sessions(self, now: Optional[float] = None) -> int:
        """Forget sessions not seen for `session_stale_after` seconds."""
        cutoff = (time.time() if now is None else now) - self.session_stale_after
        stale = [sid for sid, seen in self.sessions.items() if seen < cutoff]
        for sid in stale:
            del self.sessions[sid]

        if stale:
            logger.info(f"Cleaned up {len(stale)} old sessions. Active unique users: {len(self.sessions)}")
        return len(stale)

    def start_sweeper(self, interval: float = SESSION_SWEEP_INTERVAL_S) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep(interval))

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.prune_stale_sessions()

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def uptime_ms(self) -> float:
        return (time.time() - self.start_time) * 1000

    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(self.successful / self.total_requests * 100, 2)

    def error_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.failed / self.total_requests * 100

    def snapshot(self) -> Dict[str, Any]:
        """All metrics, keyed by their JSON wire names."""
        uptime_ms = self.uptime_ms

        return {
            "uptime": int(uptime_ms // 1000),
            "uptimeFormatted": format_uptime(uptime_ms),
            "requests": {
                "total": self.total_requests,
                "successful": self.successful,
                "failed": self.failed,
                "active": self.active,
                "successRate": self.success_rate(),
            },
            "users": {
                "activeUnique": len(self.sessions),
                "totalSessions": self.successful,
            },
            "latency": {
                name: {
                    "avg": average(samples),
                    "p50": percentile(samples, 50),
                    "p95": percentile(samples, 95),
                    "p99": percentile(samples, 99),
                }
                for name, samples in self.latency.items()
            },
            "cache": {
                name: {
                    "hits": counts["hits"],
                    "misses": counts["misses"],
                    "hitRate": hit_rate(counts["hits"], counts["misses"]),
                    "total": counts["hits"] + counts["misses"],
                }
                for name, counts in self.cache.items()
            },
            "errors": dict(self.errors),
            "resources": {
                "avgResponseSize": _round_half_up(self.avg_response_size),
                "totalTokens": self.total_tokens,
                "totalAudioChunks": self.total_audio_chunks,
            },
        }

    def summary(self) -> Dict[str, Any]:
        """Condensed view for dashboards."""
        snapshot = self.snapshot()
        return {
            "uptime": snapshot["uptimeFormatted"],
            "totalRequests": snapshot["requests"]["total"],
            "successRate": format_percentage(snapshot["requests"]["successRate"]),
            "activeStreams": snapshot["requests"]["active"],
            "avgFirstTokenLatency": snapshot["latency"]["firstToken"]["avg"],
            "avgCompleteLatency": snapshot["latency"]["complete"]["avg"],
            "cacheHitRate": {
                name: format_percentage(stats["hitRate"]) for name, stats in snapshot["cache"].items()
            },
            "errorCount": snapshot["requests"]["failed"],
            "memoryUsage": format_bytes(psutil.Process().memory_info().rss),
        }


class StreamMetricsCollector:
    """Exposes a `MetricsAggregator` snapshot to prometheus_client on every scrape."""

    def __init__(self, aggregator: MetricsAggregator, prefix: str = "voicestream"):
        self.aggregator = aggregator
        self.prefix = prefix

    def _name(self, name: str) -> str:
        return f"{self.prefix}_{name}"

    def collect(self):
        snapshot = self.aggregator.snapshot()
        requests = snapshot["requests"]

        family = CounterMetricFamily(
            self._name("requests"), "Streamed responses by outcome", labels=["type"]
        )
        family.add_metric(["success"], requests["successful"])
        family.add_metric(["failed"], requests["failed"])
        yield family

        yield GaugeMetricFamily(
            self._name("active_streams"), "Streams currently in flight", value=requests["active"]
        )
        yield GaugeMetricFamily(
            self._name("success_rate"), "Success rate percentage (0-100)", value=requests["successRate"]
        )
        yield GaugeMetricFamily(
            self._name("active_users_unique"),
            "Unique sessions seen in the last hour",
            value=snapshot["users"]["activeUnique"],
        )

        family = GaugeMetricFamily(
            self._name("latency_milliseconds"),
            "Stream latency in milliseconds",
            labels=["type", "percentile"],
        )
        for series, label in (("firstToken", "first_token"), ("firstAudio", "first_audio"), ("complete", "complete")):
            for stat, value in snapshot["latency"][series].items():
                family.add_metric([label, stat], value)
        yield family

        rate_family = GaugeMetricFamily(
            self._name("cache_hit_rate"), "Cache hit rate percentage (0-100)", labels=["type"]
        )
        ops_family = CounterMetricFamily(
            self._name("cache_operations"), "Cache lookups by result", labels=["type", "result"]
        )
        for name, stats in snapshot["cache"].items():
            rate_family.add_metric([name], stats["hitRate"])
            ops_family.add_metric([name, "hit"], stats["hits"])
            ops_family.add_metric([name, "miss"], stats["misses"])
        yield rate_family
        yield ops_family

        family = CounterMetricFamily(self._name("errors"), "Stream errors by kind", labels=["type"])
        for kind, count in snapshot["errors"].items():
            family.add_metric([kind], count)
        yield family

        family = CounterMetricFamily(self._name("resources"), "Resource usage totals", labels=["type"])
        family.add_metric(["tokens"], snapshot["resources"]["totalTokens"])
        family.add_metric(["audio_chunks"], snapshot["resources"]["totalAudioChunks"])
        yield family

        yield GaugeMetricFamily(
            self._name("avg_response_size"),
            "Average response size in words",
            value=snapshot["resources"]["avgResponseSize"],
        )
        yield GaugeMetricFamily(
            self._name("uptime_seconds"), "Metrics uptime in seconds", value=snapshot["uptime"]
        )

        process = psutil.Process()
        memory = process.memory_info()
        family = GaugeMetricFamily(
            self._name("process_memory_bytes"), "Process memory usage in bytes", labels=["type"]
        )
        family.add_metric(["rss"], memory.rss)
        family.add_metric(["vms"], memory.vms)
        yield family
        yield GaugeMetricFamily(
            self._name("process_memory_percent"),
            "Process memory as a percentage of system memory",
            value=round(process.memory_percent(), 2),
        )


def render_prometheus(aggregator: MetricsAggregator) -> bytes:
    """Prometheus text exposition of one aggregator."""
    registry = CollectorRegistry()
    registry.register(StreamMetricsCollector(aggregator))
    return generate_latest(registry)
