"""
Tests for voicestream/metrics.py: aggregation, formatting helpers and the
Prometheus collector.
"""

import asyncio
import time

import pytest

from voicestream.metrics import (
    MetricsAggregator,
    average,
    format_bytes,
    format_percentage,
    format_uptime,
    hit_rate,
    percentile,
    render_prometheus,
)


# --- Helpers ---

class TestPercentile:
    def test_empty(self):
        assert percentile([], 95) == 0

    def test_nearest_rank(self):
        samples = [40, 10, 30, 20]
        assert percentile(samples, 50) == 20
        assert percentile(samples, 99) == 40

    def test_hundred_samples(self):
        samples = list(range(1, 101))
        assert percentile(samples, 50) == 50
        assert percentile(samples, 95) == 95
        assert percentile(samples, 99) == 99

    def test_monotonic(self):
        samples = [250, 13, 980, 41, 77, 512, 3, 640, 120, 88, 301]
        assert percentile(samples, 50) <= percentile(samples, 95) <= percentile(samples, 99)

    def test_clamped(self):
        assert percentile([7], 0) == 7
        assert percentile([7], 100) == 7


class TestFormatting:
    def test_average_rounds_half_up(self):
        assert average([1, 2]) == 2
        assert average([]) == 0

    def test_hit_rate(self):
        assert hit_rate(1, 2) == 33.33
        assert hit_rate(0, 0) == 0.0

    @pytest.mark.parametrize("ms,expected", [
        (5000, "5s"),
        (65000, "1m 5s"),
        (3_660_000, "1h 1m"),
        (90_000_000, "1d 1h 0m"),
    ])
    def test_format_uptime(self, ms, expected):
        assert format_uptime(ms) == expected

    def test_format_percentage(self):
        assert format_percentage(50) == "50.0%"
        assert format_percentage(33.333, 2) == "33.33%"

    @pytest.mark.parametrize("num_bytes,expected", [
        (512, "512 B"),
        (1536, "1.5 KB"),
        (3 * 1024 * 1024, "3.0 MB"),
    ])
    def test_format_bytes(self, num_bytes, expected):
        assert format_bytes(num_bytes) == expected


# --- MetricsAggregator ---

class TestMetricsAggregator:
    def test_one_success_one_failure(self, metrics):
        metrics.record_success(first_token_latency=120)
        metrics.record_error("generator", RuntimeError("model down"))

        snapshot = metrics.snapshot()
        assert snapshot["requests"]["total"] == 2
        assert snapshot["requests"]["successRate"] == 50
        assert snapshot["latency"]["firstToken"]["p50"] == 120
        assert snapshot["errors"]["generator"] == 1

    def test_successful_plus_failed_is_total(self, metrics):
        for _ in range(3):
            metrics.record_success(duration=500)
        for kind in ("network", "tts"):
            metrics.record_error(kind)

        requests = metrics.snapshot()["requests"]
        assert requests["successful"] + requests["failed"] == requests["total"] == 5

    def test_unknown_error_kind_counts_as_other(self, metrics):
        metrics.record_error("cosmic-ray")
        assert metrics.snapshot()["errors"]["other"] == 1

    def test_missing_latencies_not_sampled(self, metrics):
        metrics.record_success(first_token_latency=100)
        latency = metrics.snapshot()["latency"]
        assert latency["firstAudio"] == {"avg": 0, "p50": 0, "p95": 0, "p99": 0}

    def test_samples_bounded(self):
        metrics = MetricsAggregator(sample_limit=3)
        for value in (1, 2, 3, 4, 5):
            metrics.record_success(duration=value)
        assert list(metrics.latency["complete"]) == [3, 4, 5]

    def test_fractional_latencies_stored_as_whole_ms(self, metrics):
        metrics.record_success(first_token_latency=1.4)
        metrics.record_success(first_token_latency=1.4)
        assert list(metrics.latency["firstToken"]) == [1, 1]
        assert metrics.snapshot()["latency"]["firstToken"]["avg"] == 1

    def test_average_and_percentiles_within_samples(self, metrics):
        for value in (1.4, 1.4, 250.6, 99.5, 12.49, 980.2, 3.51):
            metrics.record_success(first_token_latency=value, duration=value * 3)

        latency = metrics.snapshot()["latency"]
        for name in ("firstToken", "complete"):
            samples = list(metrics.latency[name])
            stats = latency[name]
            assert min(samples) <= stats["avg"] <= max(samples)
            assert stats["p50"] <= stats["p95"] <= stats["p99"]
            assert min(samples) <= stats["p50"] and stats["p99"] <= max(samples)

    def test_resources(self, metrics):
        metrics.record_success(word_count=10, tokens=12, audio_chunks=2)
        metrics.record_success(word_count=20, tokens=30, audio_chunks=3)
        resources = metrics.snapshot()["resources"]
        assert resources == {"avgResponseSize": 15, "totalTokens": 42, "totalAudioChunks": 5}

    def test_cache_counters(self, metrics):
        metrics.record_cache_hit("tts")
        metrics.record_cache_miss("tts")
        metrics.record_cache_hit("embeddings")

        cache = metrics.snapshot()["cache"]
        assert cache["tts"] == {"hits": 1, "misses": 1, "hitRate": 50.0, "total": 2}
        assert cache["kb"]["total"] == 0
        assert cache["embeddings"]["hits"] == 1

    def test_active_count_never_negative(self, metrics):
        metrics.update_active_count(-1)
        assert metrics.snapshot()["requests"]["active"] == 0

    def test_recent_events(self):
        metrics = MetricsAggregator(recent_limit=3)
        for i in range(5):
            metrics.add_event("disconnect", index=i)

        assert [e["index"] for e in metrics.recent_events()] == [2, 3, 4]
        assert [e["index"] for e in metrics.recent_events(limit=1)] == [4]
        assert metrics.recent_events(limit=0) == []

    def test_success_event_recorded(self, metrics):
        metrics.record_success(session_id="s-1", first_token_latency=80)
        event = metrics.recent_events()[-1]
        assert event["type"] == "success"
        assert event["sessionId"] == "s-1"
        assert event["firstTokenLatency"] == 80

    def test_prune_stale_sessions(self, metrics):
        metrics.record_success(session_id="old")
        metrics.record_success(session_id="fresh")
        metrics.sessions["old"] = time.time() - metrics.session_stale_after - 10

        assert metrics.prune_stale_sessions() == 1
        assert metrics.snapshot()["users"]["activeUnique"] == 1

    def test_sweeper_prunes_in_background(self, metrics):
        metrics.sessions["old"] = 0.0

        async def run():
            metrics.start_sweeper(interval=0.01)
            await asyncio.sleep(0.05)
            await metrics.stop_sweeper()

        asyncio.run(run())
        assert metrics.sessions == {}

    def test_stop_sweeper_without_start(self, metrics):
        asyncio.run(metrics.stop_sweeper())

    def test_reset(self, metrics):
        metrics.record_success(session_id="s", duration=10)
        metrics.record_error("network")
        metrics.reset()

        snapshot = metrics.snapshot()
        assert snapshot["requests"]["total"] == 0
        assert snapshot["users"]["activeUnique"] == 0
        assert metrics.recent_events() == []

    def test_rates_with_no_requests(self, metrics):
        assert metrics.success_rate() == 0.0
        assert metrics.error_rate() == 0.0

    def test_summary(self, metrics):
        metrics.record_success(first_token_latency=100, duration=900)
        metrics.record_error("tts")
        metrics.record_cache_hit("tts")

        summary = metrics.summary()
        assert summary["totalRequests"] == 2
        assert summary["successRate"] == "50.0%"
        assert summary["avgFirstTokenLatency"] == 100
        assert summary["avgCompleteLatency"] == 900
        assert summary["cacheHitRate"]["tts"] == "100.0%"
        assert summary["errorCount"] == 1
        assert summary["memoryUsage"].split()[-1] in ("B", "KB", "MB", "GB")


# --- Prometheus ---

class TestPrometheusExport:
    def test_render(self, metrics):
        metrics.record_success(first_token_latency=120, tokens=5)
        metrics.record_error("network")
        metrics.record_cache_miss("tts")

        text = render_prometheus(metrics).decode("utf-8")
        assert 'voicestream_requests_total{type="success"} 1.0' in text
        assert 'voicestream_requests_total{type="failed"} 1.0' in text
        assert 'voicestream_errors_total{type="network"} 1.0' in text
        assert 'voicestream_cache_operations_total{result="miss",type="tts"} 1.0' in text \
            or 'voicestream_cache_operations_total{type="tts",result="miss"} 1.0' in text
        assert "voicestream_success_rate 50.0" in text
        assert "voicestream_process_memory_bytes" in text

    def test_latency_labels(self, metrics):
        metrics.record_success(first_token_latency=120)
        text = render_prometheus(metrics).decode("utf-8")
        lines = [line for line in text.splitlines() if line.startswith("voicestream_latency_milliseconds{")]
        first_token_p95 = [line for line in lines if 'type="first_token"' in line and 'percentile="p95"' in line]
        assert len(first_token_p95) == 1
        assert first_token_p95[0].endswith(" 120.0")
