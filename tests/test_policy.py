"""
Unit tests for OperationPolicy and the measure_time decorator.
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services.measurement_service.policy import (
    OperationPolicy,
    measure_time,
    policy_of,
)
from utils.timing import TimeUnit


class TestOperationPolicy:
    def test_defaults(self):
        p = OperationPolicy()
        assert p.display_name == ""
        assert p.unit is TimeUnit.MILLISECONDS
        assert p.threshold == 0.0
        assert p.logger_name == ""
        assert p.include_parameters is False
        assert p.tags == frozenset()
        assert p.track_memory_usage is False
        assert p.max_log_count == 0
        assert p.log_stack_trace_on_threshold_exceeded is False

    def test_unit_from_string(self):
        assert OperationPolicy(unit="seconds").unit is TimeUnit.SECONDS

    def test_tags_normalized(self):
        assert OperationPolicy(tags=["db", "io"]).tags == frozenset({"db", "io"})
        assert OperationPolicy(tags="db").tags == frozenset({"db"})

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValueError):
            OperationPolicy(threshold=-1)

    def test_negative_max_log_count_rejected(self):
        with pytest.raises(ValueError):
            OperationPolicy(max_log_count=-1)

    def test_immutable(self):
        p = OperationPolicy()
        with pytest.raises(Exception):
            p.threshold = 5.0

    def test_hashable_and_equal(self):
        assert OperationPolicy(threshold=1) == OperationPolicy(threshold=1.0)
        assert hash(OperationPolicy(tags=["a"])) == hash(OperationPolicy(tags=["a"]))


class TestLabel:
    def test_operation_name_by_default(self):
        assert OperationPolicy().label_for("load") == "load"

    def test_display_name_overrides(self):
        assert OperationPolicy(display_name="Load rows").label_for("load") == "Load rows"

    def test_tags_sorted(self):
        assert OperationPolicy(tags=["io", "db"]).label_for("load") == "load [db,io]"


class TestMeasureTime:
    def test_bare(self):
        @measure_time
        def fn():
            return 1

        assert fn() == 1
        assert policy_of(fn) == OperationPolicy()

    def test_display_name_positional(self):
        @measure_time("checkout")
        def fn():
            pass

        assert policy_of(fn).display_name == "checkout"

    def test_keywords(self):
        @measure_time(threshold=50, unit="MICROSECONDS", logger_name="file", tags={"db"}, max_log_count=3)
        def fn():
            pass

        p = policy_of(fn)
        assert p.threshold == 50.0
        assert p.unit is TimeUnit.MICROSECONDS
        assert p.logger_name == "file"
        assert p.tags == frozenset({"db"})
        assert p.max_log_count == 3

    def test_class_level(self):
        @measure_time(threshold=10)
        class Service:
            def run(self):
                return "ran"

        assert policy_of(Service).threshold == 10.0
        assert policy_of(Service.run) is None
        assert Service().run() == "ran"

    def test_policy_of_plain_object(self):
        assert policy_of(object()) is None
        assert policy_of(None) is None
