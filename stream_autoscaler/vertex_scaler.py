"""
Job Vertex Scaler
Computes the target parallelism of a single job vertex
"""

import logging
import math
from collections import OrderedDict
from datetime import datetime
from typing import Optional, Tuple

from stream_autoscaler.clock import Clock, SystemClock
from stream_autoscaler.config import AutoScalerConfig
from stream_autoscaler.events import EventComponent, EventReason, EventRecorder, EventType
from stream_autoscaler.history import ScalingSummary
from stream_autoscaler.metric_evaluator import get_target_processing_capacity
from stream_autoscaler.metrics import ScalingMetric, VertexMetrics
from stream_autoscaler.resource import JobResource

logger = logging.getLogger(__name__)

INEFFECTIVE_SCALING_MESSAGE = (
    "Ineffective scaling detected for {vertex} (expected increase: {expected:.1f}, "
    "actual increase: {actual:.1f}). {action}"
)


class JobVertexScaler:
    """Scale factor and parallelism bounds for one vertex"""

    def __init__(self, event_recorder: EventRecorder, clock: Optional[Clock] = None):
        self.event_recorder = event_recorder
        self.clock = clock or SystemClock()

    def compute_scale_target_parallelism(
        self,
        resource: JobResource,
        conf: AutoScalerConfig,
        vertex: str,
        metrics: VertexMetrics,
        history: "OrderedDict[datetime, ScalingSummary]"
    ) -> Tuple[int, float]:
        """
        Compute the parallelism a vertex should run with.

        Args:
            resource: Resource owning the vertex
            conf: Autoscaler configuration
            vertex: Vertex id
            metrics: Evaluated metrics of the vertex
            history: Past scaling decisions of the vertex, oldest first

        Returns:
            (new parallelism, expected true processing rate at that parallelism).
            The current parallelism and NaN are returned when no decision can be made.
        """
        current_parallelism = int(metrics[ScalingMetric.PARALLELISM].current)
        average_true_rate = metrics[ScalingMetric.TRUE_PROCESSING_RATE].average

        if math.isnan(average_true_rate) or average_true_rate <= 0:
            logger.info(f"{resource.key} - True processing rate of {vertex} is unknown, keeping parallelism")
            return current_parallelism, float('nan')

        target_capacity = get_target_processing_capacity(
            metrics, conf, conf.target_utilization, with_restart=True
        )
        if math.isnan(target_capacity):
            logger.info(f"{resource.key} - Target capacity of {vertex} is unknown, keeping parallelism")
            return current_parallelism, float('nan')

        scale_factor = target_capacity / average_true_rate
        min_scale_factor = 1 - conf.max_scale_down_factor
        if scale_factor < min_scale_factor:
            logger.debug(
                f"{resource.key} - Scale factor {scale_factor:.3f} of {vertex} limited to {min_scale_factor:.3f}"
            )
            scale_factor = min_scale_factor

        max_parallelism = metrics.get(ScalingMetric.MAX_PARALLELISM)
        new_parallelism = self.scale(
            current_parallelism,
            int(max_parallelism.current) if max_parallelism is not None else None,
            scale_factor,
            conf.vertex_min_parallelism,
            conf.vertex_max_parallelism
        )
        expected_rate = average_true_rate * new_parallelism / current_parallelism

        logger.debug(
            f"{resource.key} - {vertex}: target capacity {target_capacity:.1f}, "
            f"true rate {average_true_rate:.1f}, factor {scale_factor:.3f}, "
            f"parallelism {current_parallelism} -> {new_parallelism}"
        )

        if new_parallelism > current_parallelism and self._block_ineffective_scale_up(
            resource, conf, vertex, metrics, history
        ):
            return current_parallelism, float('nan')

        return new_parallelism, expected_rate

    @staticmethod
    def scale(parallelism: int, max_parallelism: Optional[int], scale_factor: float,
              min_parallelism: int, vertex_max_parallelism: int) -> int:
        """Apply scale_factor and clamp to [max(1, min), min(max_parallelism, vertex max)]"""
        upper_bound = vertex_max_parallelism
        if max_parallelism is not None:
            upper_bound = min(upper_bound, max_parallelism)
        lower_bound = max(1, min_parallelism)

        if math.isinf(scale_factor):
            new_parallelism = upper_bound
        else:
            new_parallelism = math.ceil(scale_factor * parallelism)

        # max_parallelism wins over the configured minimum
        return max(min(max(new_parallelism, lower_bound), upper_bound), 1)

    def _block_ineffective_scale_up(
        self,
        resource: JobResource,
        conf: AutoScalerConfig,
        vertex: str,
        metrics: VertexMetrics,
        history: "OrderedDict[datetime, ScalingSummary]"
    ) -> bool:
        """
        Check whether the last scale-up of the vertex paid off.

        Emits an IneffectiveScaling warning when it did not; blocks the new
        scale-up only if detection is enabled and the last decision is still
        within the cooldown.
        """
        if not history:
            return False

        last_ts = next(reversed(history))
        last_summary = history[last_ts]
        if not last_summary.is_scaled_up:
            return False

        # the last decision was never applied, nothing to judge
        current_parallelism = int(metrics[ScalingMetric.PARALLELISM].current)
        if current_parallelism != last_summary.new_parallelism:
            return False

        last_rate = last_summary.metrics[ScalingMetric.TRUE_PROCESSING_RATE].average
        last_expected_rate = last_summary.expected_processing_rate
        current_rate = metrics[ScalingMetric.TRUE_PROCESSING_RATE].average
        if any(math.isnan(v) for v in (last_rate, last_expected_rate, current_rate)):
            return False

        expected_increase = last_expected_rate - last_rate
        actual_increase = current_rate - last_rate
        if expected_increase <= 0:
            return False

        if actual_increase / expected_increase >= conf.scaling_effectiveness_threshold:
            return False

        within_cooldown = self.clock.now() - last_ts < conf.scaling_effectiveness_cooldown
        block = conf.scaling_effectiveness_detection_enabled and within_cooldown
        action = "Blocking of ineffective scaling decisions is enabled." if block else \
            "Scaling is not blocked."

        self.event_recorder.trigger_event(
            resource,
            EventType.WARNING,
            EventReason.INEFFECTIVE_SCALING,
            EventComponent.OPERATOR,
            INEFFECTIVE_SCALING_MESSAGE.format(
                vertex=vertex, expected=expected_increase, actual=actual_increase, action=action
            )
        )
        return block
