"""
Shared fixtures for autoscaler tests
"""
from datetime import datetime, timedelta, timezone

import pytest

from stream_autoscaler.clock import FixedClock, to_epoch_millis
from stream_autoscaler.config import AutoScalerConfig
from stream_autoscaler.events import EventRecorder
from stream_autoscaler.metric_evaluator import ScalingMetricEvaluator
from stream_autoscaler.metrics import EvaluatedScalingMetric, ScalingMetric
from stream_autoscaler.resource import JobResource, JobState, JobStatus, ResourceStatus


START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def event_recorder(clock):
    return EventRecorder(clock=clock)


@pytest.fixture
def conf():
    """Config without stabilization, scale-down limit or catch-up"""
    return AutoScalerConfig(
        enabled=True,
        scaling_enabled=True,
        stabilization_interval=timedelta(0),
        max_scale_down_factor=1.0,
        catch_up_duration=timedelta(0),
    )


@pytest.fixture
def running_resource(clock):
    return JobResource(
        namespace="streaming",
        name="orders",
        uid="6f1c2d4e-0000-4000-8000-000000000001",
        status=ResourceStatus(job_status=JobStatus(
            job_id="a1b2c3d4",
            job_name="orders-enrichment",
            state=JobState.RUNNING,
            start_time=to_epoch_millis(clock.now()),
            update_time=to_epoch_millis(clock.now())
        ))
    )


@pytest.fixture
def make_evaluated():
    """Build one vertex's evaluated metrics, thresholds included"""
    def _make(conf, parallelism, target_rate, processing_rate, catch_up_rate=0.0, max_parallelism=720):
        metrics = {
            ScalingMetric.PARALLELISM: EvaluatedScalingMetric.of(parallelism),
            ScalingMetric.TARGET_DATA_RATE: EvaluatedScalingMetric(target_rate, target_rate),
            ScalingMetric.CATCH_UP_DATA_RATE: EvaluatedScalingMetric.of(catch_up_rate),
            ScalingMetric.TRUE_PROCESSING_RATE: EvaluatedScalingMetric(processing_rate, processing_rate),
        }
        if max_parallelism is not None:
            metrics[ScalingMetric.MAX_PARALLELISM] = EvaluatedScalingMetric.of(max_parallelism)
        return ScalingMetricEvaluator.compute_processing_rate_thresholds(metrics, conf)
    return _make
