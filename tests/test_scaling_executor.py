"""
Tests for scaling executor module
"""
import math
from dataclasses import replace
from datetime import timedelta
from unittest.mock import Mock

import pytest

from stream_autoscaler.clock import to_epoch_millis
from stream_autoscaler.events import EventReason, EventType
from stream_autoscaler.history import AutoScalerInfo, ScalingSummary
from stream_autoscaler.metrics import EvaluatedScalingMetric, ScalingMetric
from stream_autoscaler.resource import (
    PARALLELISM_OVERRIDES, JobState, get_parallelism_overrides, set_parallelism_overrides
)
from stream_autoscaler.scaling_executor import (
    SCALING_SUMMARY_HEADER_SCALING_DISABLED, SCALING_SUMMARY_HEADER_SCALING_ENABLED, ScalingExecutor
)


@pytest.fixture
def executor(event_recorder, clock):
    return ScalingExecutor(event_recorder, override_applier=Mock(), clock=clock)


class TestStabilizationPeriod:
    """Test the stabilization gate"""

    def test_stabilization_period(self, executor, conf, clock, running_resource, make_evaluated):
        """Scaling waits for the interval after each job status change"""
        conf = replace(conf, stabilization_interval=timedelta(minutes=1))
        metrics = {"v1": make_evaluated(conf, 1, 110, 100)}
        info = AutoScalerInfo()
        job_status = running_resource.status.job_status

        assert executor.scale_resource(running_resource, info, conf, metrics) is False

        executor.set_clock(clock.offset(timedelta(seconds=30)))
        assert executor.scale_resource(running_resource, info, conf, metrics) is False

        executor.set_clock(clock.offset(timedelta(seconds=50)))
        assert executor.scale_resource(running_resource, info, conf, metrics) is False

        now = clock.offset(timedelta(seconds=70))
        executor.set_clock(now)
        assert executor.scale_resource(running_resource, info, conf, metrics) is True

        # A job should not be considered stable in a non-running state
        job_status.state = JobState.FAILING
        assert executor.scale_resource(running_resource, info, conf, metrics) is False

        job_status.state = JobState.RUNNING
        job_status.update_time = to_epoch_millis(now.now())
        assert executor.scale_resource(running_resource, info, conf, metrics) is False

        executor.set_clock(now.offset(timedelta(seconds=59)))
        assert executor.scale_resource(running_resource, info, conf, metrics) is False

        executor.set_clock(now.offset(timedelta(seconds=61)))
        assert executor.scale_resource(running_resource, info, conf, metrics) is True

    def test_interval_boundary_is_inclusive(self, executor, conf, clock, running_resource):
        """Exactly one interval after the update counts as stable"""
        conf = replace(conf, stabilization_interval=timedelta(minutes=1))
        executor.set_clock(clock.offset(timedelta(minutes=1)))

        assert executor.stabilization_period_passed(running_resource, conf) is True

    def test_unknown_update_time(self, executor, conf, running_resource):
        """Test a running job without update time is not stable"""
        running_resource.status.job_status.update_time = None

        assert executor.stabilization_period_passed(running_resource, conf) is False


class TestUtilizationBoundaries:
    """Test the utilization band short-circuit"""

    @pytest.fixture
    def band_conf(self, conf):
        # Restart time should not affect utilization boundary
        return replace(conf, restart_time=timedelta(0), target_utilization=0.6,
                       target_utilization_boundary=0.0)

    def test_zero_boundary(self, band_conf, make_evaluated):
        evaluated = {"op1": make_evaluated(band_conf, 1, 70, 100)}
        summaries = {"op1": ScalingSummary(2, 1, evaluated["op1"])}

        assert ScalingExecutor.all_vertices_within_utilization_target(evaluated, summaries) is False

    def test_within_boundary(self, band_conf, make_evaluated):
        conf = replace(band_conf, target_utilization_boundary=0.2)
        evaluated = {"op1": make_evaluated(conf, 1, 70, 100)}
        summaries = {"op1": ScalingSummary(2, 1, evaluated["op1"])}

        assert ScalingExecutor.all_vertices_within_utilization_target(evaluated, summaries) is True

    def test_one_vertex_outside_blocks_all(self, band_conf, make_evaluated):
        """Multi-vertex decisions are all-or-nothing"""
        conf = replace(band_conf, target_utilization_boundary=0.2)
        evaluated = {
            "op1": make_evaluated(conf, 1, 70, 100),
            "op2": make_evaluated(conf, 1, 85, 100),
        }
        summaries = {
            "op1": ScalingSummary(1, 2, evaluated["op1"]),
            "op2": ScalingSummary(1, 2, evaluated["op2"]),
        }

        assert ScalingExecutor.all_vertices_within_utilization_target(evaluated, summaries) is False

    def test_all_vertices_inside(self, band_conf, make_evaluated):
        conf = replace(band_conf, target_utilization_boundary=0.2)
        evaluated = {
            "op1": make_evaluated(conf, 1, 70, 100),
            "op2": make_evaluated(conf, 1, 70, 100),
        }
        summaries = {
            "op1": ScalingSummary(1, 2, evaluated["op1"]),
            "op2": ScalingSummary(1, 2, evaluated["op2"]),
        }

        assert ScalingExecutor.all_vertices_within_utilization_target(evaluated, summaries) is True

    def test_backlog_pushes_vertex_out_of_band(self, band_conf, make_evaluated):
        """Catch-up rate for backlog raises the lower bound"""
        conf = replace(band_conf, target_utilization_boundary=0.2)
        evaluated = {"op1": make_evaluated(conf, 1, 70, 100, catch_up_rate=15)}
        summaries = {"op1": ScalingSummary(1, 2, evaluated["op1"])}

        assert ScalingExecutor.all_vertices_within_utilization_target(evaluated, summaries) is False

    def test_within_band_does_not_rescale(self, executor, band_conf, running_resource, make_evaluated):
        conf = replace(band_conf, target_utilization_boundary=0.2)
        evaluated = {"op1": make_evaluated(conf, 1, 70, 100)}

        assert executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated) is False
        assert PARALLELISM_OVERRIDES not in running_resource.spec.configuration


class TestScaleResource:
    """Test applying scaling decisions"""

    def test_overrides_cover_all_vertices(self, executor, conf, clock, running_resource, make_evaluated):
        """Unchanged vertices keep their current parallelism in the override map"""
        evaluated = {
            "v1": make_evaluated(conf, 2, 150, 100),
            "v2": make_evaluated(conf, 4, 70, 100),
        }
        info = AutoScalerInfo()

        assert executor.scale_resource(running_resource, info, conf, evaluated) is True

        assert get_parallelism_overrides(running_resource) == {"v1": 5, "v2": 4}
        assert running_resource.spec.configuration[PARALLELISM_OVERRIDES] == "v1:5,v2:4"
        executor.override_applier.assert_called_once_with(running_resource)

        history = info.get_scaling_history("v1")
        assert list(history) == [clock.now()]
        assert history[clock.now()].new_parallelism == 5
        assert info.get_scaling_history("v2") == {}

    def test_override_write_is_idempotent(self, executor, conf, running_resource, make_evaluated):
        evaluated = {
            "v1": make_evaluated(conf, 2, 150, 100),
            "v2": make_evaluated(conf, 4, 70, 100),
        }
        executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated)
        written = running_resource.spec.configuration[PARALLELISM_OVERRIDES]

        assert set_parallelism_overrides(running_resource, {"v1": 5, "v2": 4}) is False
        assert running_resource.spec.configuration[PARALLELISM_OVERRIDES] == written

    def test_repeated_decision_is_idempotent(self, executor, conf, clock, running_resource, make_evaluated,
                                             event_recorder):
        """The same metrics and history give the same overrides without effectiveness warnings"""
        evaluated = {
            "v1": make_evaluated(conf, 2, 150, 100),
            "v2": make_evaluated(conf, 4, 70, 100),
        }
        info = AutoScalerInfo()

        assert executor.scale_resource(running_resource, info, conf, evaluated) is True
        first = running_resource.spec.configuration[PARALLELISM_OVERRIDES]

        executor.set_clock(clock.offset(timedelta(minutes=1)))
        assert executor.scale_resource(running_resource, info, conf, evaluated) is True
        second = running_resource.spec.configuration[PARALLELISM_OVERRIDES]

        assert first == second == "v1:5,v2:4"
        reasons = [e.reason for e in event_recorder.recent_events]
        assert EventReason.INEFFECTIVE_SCALING not in reasons
        assert reasons == [EventReason.SCALING_REPORT, EventReason.SCALING_REPORT]
        assert len(info.get_scaling_history("v1")) == 2

    def test_scaling_report_event(self, executor, conf, running_resource, make_evaluated, event_recorder):
        evaluated = {"v1": make_evaluated(conf, 2, 150, 100)}

        executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated)

        events = list(event_recorder.recent_events)
        assert len(events) == 1
        assert events[0].type == EventType.NORMAL
        assert events[0].reason == EventReason.SCALING_REPORT
        assert events[0].message.startswith(SCALING_SUMMARY_HEADER_SCALING_ENABLED)
        assert "Vertex ID v1 | Parallelism 2 -> 5" in events[0].message

    def test_scaling_disabled_only_reports(self, executor, conf, running_resource, make_evaluated, event_recorder):
        """Recommendations are reported but never written"""
        conf = replace(conf, scaling_enabled=False)
        evaluated = {"v1": make_evaluated(conf, 2, 150, 100)}
        info = AutoScalerInfo()

        assert executor.scale_resource(running_resource, info, conf, evaluated) is False

        assert PARALLELISM_OVERRIDES not in running_resource.spec.configuration
        assert info.get_scaling_history("v1") == {}
        executor.override_applier.assert_not_called()
        events = list(event_recorder.recent_events)
        assert len(events) == 1
        assert events[0].message.startswith(SCALING_SUMMARY_HEADER_SCALING_DISABLED)

    def test_zero_vertices(self, executor, conf, running_resource, event_recorder):
        assert executor.scale_resource(running_resource, AutoScalerInfo(), conf, {}) is False
        assert len(event_recorder.recent_events) == 0
        assert PARALLELISM_OVERRIDES not in running_resource.spec.configuration

    def test_unknown_processing_rate_keeps_parallelism(self, executor, conf, running_resource, make_evaluated):
        evaluated = {"v1": make_evaluated(conf, 2, 150, float('nan'))}

        assert executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated) is False

    def test_incomplete_vertex_is_skipped(self, executor, conf, running_resource, make_evaluated):
        """A vertex lacking metrics keeps its parallelism while the others scale"""
        evaluated = {
            "v1": make_evaluated(conf, 2, 150, 100),
            "v2": {
                ScalingMetric.PARALLELISM: EvaluatedScalingMetric.of(3),
                ScalingMetric.TARGET_DATA_RATE: EvaluatedScalingMetric.of(100),
            },
        }
        info = AutoScalerInfo()

        assert executor.scale_resource(running_resource, info, conf, evaluated) is True

        assert running_resource.spec.configuration[PARALLELISM_OVERRIDES] == "v1:5,v2:3"
        assert info.get_scaling_history("v2") == {}

    def test_vertex_without_parallelism_left_out(self, executor, conf, running_resource, make_evaluated):
        evaluated = {
            "v1": make_evaluated(conf, 2, 150, 100),
            "v2": {ScalingMetric.TARGET_DATA_RATE: EvaluatedScalingMetric.of(100)},
        }

        assert executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated) is True

        assert get_parallelism_overrides(running_resource) == {"v1": 5}

    def test_only_incomplete_vertices(self, executor, conf, running_resource, event_recorder):
        evaluated = {"v1": {ScalingMetric.PARALLELISM: EvaluatedScalingMetric.of(3)}}

        assert executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated) is False

        assert PARALLELISM_OVERRIDES not in running_resource.spec.configuration
        assert len(event_recorder.recent_events) == 0

    def test_works_without_applier(self, event_recorder, clock, conf, running_resource, make_evaluated):
        executor = ScalingExecutor(event_recorder, clock=clock)
        evaluated = {"v1": make_evaluated(conf, 2, 150, 100)}

        assert executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated) is True


class TestParallelismClamping:
    """Test parallelism bounds"""

    def test_clamped_to_max_parallelism(self, executor, conf, running_resource, make_evaluated):
        evaluated = {"v1": make_evaluated(conf, 10, 10000, 100, max_parallelism=12)}

        executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated)

        assert get_parallelism_overrides(running_resource) == {"v1": 12}

    def test_missing_max_parallelism_is_unbounded(self, executor, conf, running_resource, make_evaluated):
        """Only the configured vertex maximum applies"""
        evaluated = {"v1": make_evaluated(conf, 10, 10000, 100, max_parallelism=None)}

        executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated)

        assert get_parallelism_overrides(running_resource) == {"v1": conf.vertex_max_parallelism}

    def test_never_below_one(self, executor, conf, running_resource, make_evaluated):
        evaluated = {"v1": make_evaluated(conf, 4, 1, 1000)}

        executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated)

        assert get_parallelism_overrides(running_resource) == {"v1": 1}

    def test_scale_down_factor_limits_reduction(self, executor, conf, running_resource, make_evaluated):
        conf = replace(conf, max_scale_down_factor=0.5)
        evaluated = {"v1": make_evaluated(conf, 4, 1, 1000)}

        executor.scale_resource(running_resource, AutoScalerInfo(), conf, evaluated)

        assert get_parallelism_overrides(running_resource) == {"v1": 2}


class TestScalingReport:
    """Test the scaling report message"""

    def test_report_lists_vertices_sorted(self):
        metrics = {
            ScalingMetric.TRUE_PROCESSING_RATE: EvaluatedScalingMetric.of(100),
            ScalingMetric.TARGET_DATA_RATE: EvaluatedScalingMetric.of(150),
        }
        summaries = {
            "b": ScalingSummary(1, 2, metrics, expected_processing_rate=200),
            "a": ScalingSummary(4, 2, metrics, expected_processing_rate=50),
        }

        report = ScalingExecutor.scaling_report(summaries, scaling_enabled=True)

        assert report.index("Vertex ID a") < report.index("Vertex ID b")
        assert "Processing capacity 100.00 -> 200.00" in report

    def test_report_with_unknown_expected_rate(self):
        metrics = {
            ScalingMetric.TRUE_PROCESSING_RATE: EvaluatedScalingMetric.of(100),
            ScalingMetric.TARGET_DATA_RATE: EvaluatedScalingMetric.of(150),
        }
        summaries = {"a": ScalingSummary(1, 2, metrics)}

        report = ScalingExecutor.scaling_report(summaries, scaling_enabled=False)

        assert math.isnan(summaries["a"].expected_processing_rate)
        assert "nan" in report
