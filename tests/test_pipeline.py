"""
Unit tests for the async delivery pipeline — ordering, drain on close,
the RUNNING → DRAINING → STOPPED lifecycle, and failure isolation.
"""
import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services.sink_service.errors import ClosedSinkError
from services.sink_service.pipeline import AsyncDeliveryPipeline, PipelineState
from utils.metrics import MetricsCollector


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _pipeline(writer, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("collector", MetricsCollector(window=100))
    return AsyncDeliveryPipeline(writer, name="test", **kwargs)


class TestDelivery:
    def test_lines_delivered_in_order(self):
        written = []
        p = _pipeline(written.append)
        for i in range(50):
            p.enqueue(f"line {i}")
        p.close()
        assert written == [f"line {i}" for i in range(50)]
        assert p.delivered == 50

    def test_writes_happen_off_caller_thread(self):
        threads = []
        p = _pipeline(lambda line: threads.append(threading.current_thread().name))
        p.enqueue("x")
        p.close()
        assert threads == ["test-writer"]

    def test_enqueue_does_not_block_on_slow_writer(self):
        gate = threading.Event()
        p = _pipeline(lambda line: gate.wait(2))
        started = time.monotonic()
        for i in range(100):
            p.enqueue(str(i))
        assert time.monotonic() - started < 0.5
        gate.set()
        p.close()

    def test_multiple_producers(self):
        written = []
        lock = threading.Lock()

        def writer(line):
            with lock:
                written.append(line)

        p = _pipeline(writer)

        def produce(prefix):
            for i in range(200):
                p.enqueue(f"{prefix}:{i}")

        threads = [threading.Thread(target=produce, args=(f"p{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        p.close()

        assert len(written) == 800
        for n in range(4):
            own = [w for w in written if w.startswith(f"p{n}:")]
            assert own == [f"p{n}:{i}" for i in range(200)]

    def test_metrics_counted(self):
        collector = MetricsCollector(window=100)
        p = _pipeline(lambda line: None, collector=collector)
        p.enqueue("a")
        p.enqueue("b")
        p.close()
        assert collector.counter("sink.test.delivered") == 2


class TestLifecycle:
    def test_initial_state(self):
        p = _pipeline(lambda line: None)
        assert p.state is PipelineState.RUNNING
        p.close()
        assert p.state is PipelineState.STOPPED

    def test_close_drains_queue(self):
        gate = threading.Event()
        written = []

        def writer(line):
            gate.wait(2)
            written.append(line)

        p = _pipeline(writer)
        for line in ("one", "two", "three"):
            p.enqueue(line)
        gate.set()
        p.close()
        assert written == ["one", "two", "three"]

    def test_close_is_idempotent(self):
        p = _pipeline(lambda line: None)
        p.close()
        p.close()
        assert p.state is PipelineState.STOPPED

    def test_enqueue_after_close_raises(self):
        written = []
        p = _pipeline(written.append)
        p.close()
        with pytest.raises(ClosedSinkError):
            p.enqueue("late")
        assert written == []

    def test_enqueue_while_draining_is_delivered(self):
        gate = threading.Event()
        written = []

        def writer(line):
            gate.wait(2)
            written.append(line)

        p = _pipeline(writer)
        p.enqueue("first")
        closer = threading.Thread(target=p.close)
        closer.start()
        assert _wait_for(lambda: p.state is PipelineState.DRAINING)
        p.enqueue("during drain")
        gate.set()
        closer.join()

        assert written == ["first", "during drain"]
        assert p.state is PipelineState.STOPPED

    def test_drain_timeout_cancels_consumer(self):
        started = threading.Event()
        gate = threading.Event()

        def writer(line):
            started.set()
            gate.wait(5)

        p = _pipeline(writer)
        for i in range(3):
            p.enqueue(str(i))
        assert started.wait(2)

        p.close(timeout=0.1)

        assert p.state is PipelineState.STOPPED
        assert p.dropped == 2
        gate.set()

    def test_concurrent_close(self):
        p = _pipeline(lambda line: None)
        for i in range(20):
            p.enqueue(str(i))
        closers = [threading.Thread(target=p.close) for _ in range(4)]
        for t in closers:
            t.start()
        for t in closers:
            t.join()
        assert p.state is PipelineState.STOPPED
        assert p.delivered == 20


class TestDeliveryFailure:
    def test_failure_dropped_and_pipeline_continues(self):
        written = []

        def writer(line):
            if line == "bad":
                raise OSError("disk full")
            written.append(line)

        collector = MetricsCollector(window=100)
        p = _pipeline(writer, collector=collector)
        for line in ("a", "bad", "b"):
            p.enqueue(line)
        p.close()

        assert written == ["a", "b"]
        assert p.dropped == 1
        assert p.delivered == 2
        assert collector.counter("sink.test.dropped") == 1

    def test_stats(self):
        p = _pipeline(lambda line: None)
        p.enqueue("a")
        p.close()
        stats = p.stats
        assert stats["state"] == "stopped"
        assert stats["delivered"] == 1
        assert stats["dropped"] == 0
        assert stats["pending"] == 0
