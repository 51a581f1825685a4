"""
Scaling Executor
Decides whether a resource gets rescaled and records the decision as parallelism overrides
"""

import logging
from typing import Callable, Dict, Mapping, Optional

from stream_autoscaler.clock import Clock, SystemClock, from_epoch_millis
from stream_autoscaler.config import AutoScalerConfig
from stream_autoscaler.events import EventComponent, EventReason, EventRecorder, EventType
from stream_autoscaler.history import AutoScalerInfo, ScalingSummary
from stream_autoscaler.metrics import EvaluatedMetrics, ScalingMetric
from stream_autoscaler.resource import JobResource, JobState, set_parallelism_overrides
from stream_autoscaler.vertex_scaler import JobVertexScaler

logger = logging.getLogger(__name__)

SCALING_SUMMARY_ENTRY = (
    "{{ Vertex ID {vertex} | Parallelism {current} -> {new} | "
    "Processing capacity {true_rate:.2f} -> {expected:.2f} | Target data rate {target:.2f} }}"
)
SCALING_SUMMARY_HEADER_SCALING_DISABLED = "Recommended parallelism change:"
SCALING_SUMMARY_HEADER_SCALING_ENABLED = "Scaling vertices:"

# Metrics a vertex needs before a scaling decision can be made for it
REQUIRED_METRICS = (
    ScalingMetric.PARALLELISM,
    ScalingMetric.TRUE_PROCESSING_RATE,
    ScalingMetric.TARGET_DATA_RATE,
    ScalingMetric.CATCH_UP_DATA_RATE,
    ScalingMetric.SCALE_UP_RATE_THRESHOLD,
    ScalingMetric.SCALE_DOWN_RATE_THRESHOLD,
)


class ScalingExecutor:
    """
    Turns evaluated metrics into a parallelism override map.

    A resource is rescaled only when its job is running, has been stable for
    the stabilization interval and at least one vertex is outside its
    utilization band.
    """

    def __init__(
        self,
        event_recorder: EventRecorder,
        override_applier: Optional[Callable[[JobResource], None]] = None,
        clock: Optional[Clock] = None
    ):
        self.event_recorder = event_recorder
        self.override_applier = override_applier
        self.clock = clock or SystemClock()
        self.vertex_scaler = JobVertexScaler(event_recorder, self.clock)

    def set_clock(self, clock: Clock):
        self.clock = clock
        self.vertex_scaler.clock = clock

    def scale_resource(
        self,
        resource: JobResource,
        info: AutoScalerInfo,
        conf: AutoScalerConfig,
        evaluated_metrics: EvaluatedMetrics
    ) -> bool:
        """
        Run one scaling decision for a resource.

        Returns:
            True if new parallelism overrides were written
        """
        if not self.stabilization_period_passed(resource, conf):
            return False

        summaries = self.compute_scaling_summary(resource, conf, evaluated_metrics, info)
        if not summaries:
            logger.info(f"{resource.key} - All job vertices are currently running at their target parallelism")
            return False

        if self.all_vertices_within_utilization_target(evaluated_metrics, summaries):
            return False

        scaling_enabled = conf.scaling_enabled
        self.event_recorder.trigger_event(
            resource,
            EventType.NORMAL,
            EventReason.SCALING_REPORT,
            EventComponent.OPERATOR,
            self.scaling_report(summaries, scaling_enabled)
        )

        if not scaling_enabled:
            logger.info(f"{resource.key} - Scaling is disabled, only reporting recommended parallelism")
            return False

        self.set_vertex_parallelism_overrides(resource, evaluated_metrics, summaries)
        info.add_to_scaling_history(self.clock.now(), summaries, conf)

        if self.override_applier is not None:
            self.override_applier(resource)

        return True

    def stabilization_period_passed(self, resource: JobResource, conf: AutoScalerConfig) -> bool:
        """The job must be running and unchanged for at least the stabilization interval"""
        job_status = resource.status.job_status

        if job_status.state != JobState.RUNNING:
            logger.info(f"{resource.key} - Job is not running, skipping scaling")
            return False

        if job_status.update_time is None:
            logger.info(f"{resource.key} - Job status update time is unknown, skipping scaling")
            return False

        stable_since = from_epoch_millis(job_status.update_time)
        if stable_since + conf.stabilization_interval > self.clock.now():
            logger.info(
                f"{resource.key} - Stabilization period has not passed yet, "
                f"job is stable since {stable_since.isoformat()}"
            )
            return False

        return True

    @staticmethod
    def all_vertices_within_utilization_target(
        evaluated_metrics: EvaluatedMetrics,
        summaries: Mapping[str, ScalingSummary]
    ) -> bool:
        """
        Check whether every scaled vertex already processes within its utilization band.

        A vertex is within target when its average true processing rate lies in
        [SCALE_UP_RATE_THRESHOLD, SCALE_DOWN_RATE_THRESHOLD].
        """
        for vertex in summaries:
            metrics = evaluated_metrics[vertex]
            processing_rate = metrics[ScalingMetric.TRUE_PROCESSING_RATE].average
            scale_up_threshold = metrics[ScalingMetric.SCALE_UP_RATE_THRESHOLD].current
            scale_down_threshold = metrics[ScalingMetric.SCALE_DOWN_RATE_THRESHOLD].current

            if processing_rate < scale_up_threshold or processing_rate > scale_down_threshold:
                logger.debug(
                    f"Vertex {vertex} processing rate {processing_rate:.2f} is outside "
                    f"({scale_up_threshold:.2f}, {scale_down_threshold:.2f})"
                )
                return False

            logger.debug(
                f"Vertex {vertex} processing rate {processing_rate:.2f} is within target "
                f"({scale_up_threshold:.2f}, {scale_down_threshold:.2f})"
            )

        logger.info("All vertex processing rates are within target")
        return True

    def compute_scaling_summary(
        self,
        resource: JobResource,
        conf: AutoScalerConfig,
        evaluated_metrics: EvaluatedMetrics,
        info: AutoScalerInfo
    ) -> Dict[str, ScalingSummary]:
        """
        Summaries of the vertices whose parallelism should change.

        Vertices with incomplete metrics are skipped this cycle.
        """
        summaries: Dict[str, ScalingSummary] = {}

        for vertex, metrics in evaluated_metrics.items():
            missing = [m.value for m in REQUIRED_METRICS if m not in metrics]
            if missing:
                logger.warning(f"{resource.key} - Skipping {vertex}, missing metrics: {', '.join(missing)}")
                continue
            current_parallelism = int(metrics[ScalingMetric.PARALLELISM].current)
            new_parallelism, expected_rate = self.vertex_scaler.compute_scale_target_parallelism(
                resource, conf, vertex, metrics, info.get_scaling_history(vertex)
            )
            if new_parallelism == current_parallelism:
                continue
            summaries[vertex] = ScalingSummary(
                current_parallelism=current_parallelism,
                new_parallelism=new_parallelism,
                metrics=metrics,
                expected_processing_rate=expected_rate
            )

        return summaries

    @staticmethod
    def set_vertex_parallelism_overrides(
        resource: JobResource,
        evaluated_metrics: EvaluatedMetrics,
        summaries: Mapping[str, ScalingSummary]
    ) -> bool:
        """
        Write overrides for every vertex: scaled ones get their new parallelism,
        the others keep their current one. Vertices of unknown parallelism are left out.

        Returns:
            True if the stored override value changed
        """
        overrides: Dict[str, int] = {}
        for vertex, metrics in evaluated_metrics.items():
            if vertex in summaries:
                overrides[vertex] = summaries[vertex].new_parallelism
            elif ScalingMetric.PARALLELISM in metrics:
                overrides[vertex] = int(metrics[ScalingMetric.PARALLELISM].current)

        changed = set_parallelism_overrides(resource, overrides)
        if changed:
            logger.info(f"{resource.key} - Parallelism overrides set to {overrides}")
        return changed

    @staticmethod
    def scaling_report(summaries: Mapping[str, ScalingSummary], scaling_enabled: bool) -> str:
        header = SCALING_SUMMARY_HEADER_SCALING_ENABLED if scaling_enabled \
            else SCALING_SUMMARY_HEADER_SCALING_DISABLED
        entries = []
        for vertex, summary in sorted(summaries.items()):
            entries.append(SCALING_SUMMARY_ENTRY.format(
                vertex=vertex,
                current=summary.current_parallelism,
                new=summary.new_parallelism,
                true_rate=summary.metrics[ScalingMetric.TRUE_PROCESSING_RATE].average,
                expected=summary.expected_processing_rate,
                target=summary.metrics[ScalingMetric.TARGET_DATA_RATE].average
            ))
        return " ".join([header] + entries)
