"""
Unit tests for the in-process metrics collector.
"""
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from utils.metrics import MetricsCollector


class TestMetricsCollector:
    def test_snapshot_percentiles(self):
        m = MetricsCollector(window=100)
        for v in range(1, 21):
            m.record("op", float(v))
        snap = m.snapshot()["op"]
        assert snap["count"] == 20
        assert snap["min_ms"] == 1.0
        assert snap["max_ms"] == 20.0
        assert snap["p95_ms"] is not None
        assert snap["p99_ms"] is None

    def test_window_bounds_memory(self):
        m = MetricsCollector(window=5)
        for v in range(10):
            m.record("op", float(v))
        snap = m.snapshot()["op"]
        assert snap["count"] == 10
        assert snap["window"] == 5
        assert snap["min_ms"] == 5.0

    def test_counters(self):
        m = MetricsCollector(window=5)
        m.increment("sink.file.dropped")
        m.increment("sink.file.dropped", 2)
        assert m.counter("sink.file.dropped") == 3
        assert m.counter("unknown") == 0
        assert m.snapshot()["counters"] == {"sink.file.dropped": 3}

    def test_reset(self):
        m = MetricsCollector(window=5)
        m.record("op", 1.0)
        m.increment("c")
        m.reset()
        snap = m.snapshot()
        assert "op" not in snap
        assert snap["counters"] == {}

    def test_concurrent_increments(self):
        m = MetricsCollector(window=5)

        def worker():
            for _ in range(500):
                m.increment("hits")
                m.record("op", 1.0)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert m.counter("hits") == 4000
        assert m.snapshot()["op"]["count"] == 4000
