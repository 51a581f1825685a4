"""
Scaling Metric Evaluator
Turns collected per-vertex samples into evaluated metrics and processing-rate thresholds
"""

import logging
import math
import statistics
from datetime import datetime
from typing import Dict, Mapping

from stream_autoscaler.config import AutoScalerConfig
from stream_autoscaler.metrics import (
    CollectedMetrics, EvaluatedMetrics, EvaluatedScalingMetric, ScalingMetric, VertexMetrics
)

logger = logging.getLogger(__name__)


def get_target_processing_capacity(metrics: Mapping[ScalingMetric, EvaluatedScalingMetric],
                                   conf: AutoScalerConfig,
                                   target_utilization: float,
                                   with_restart: bool) -> float:
    """
    Processing rate a vertex needs to run at target_utilization.

    Args:
        metrics: Evaluated metrics of one vertex
        conf: Autoscaler configuration
        target_utilization: Busy ratio to plan for, clamped to [0, 1]
        with_restart: Add the rate needed to catch up the data accumulated
            while the job restarts after rescaling

    Returns:
        Records/s, NaN if the inputs are unknown, inf for zero utilization
    """
    catch_up = metrics.get(ScalingMetric.CATCH_UP_DATA_RATE)
    target = metrics.get(ScalingMetric.TARGET_DATA_RATE)
    if catch_up is None or target is None:
        return float('nan')

    catch_up_rate = catch_up.current
    target_rate = target.average
    if math.isnan(catch_up_rate) or math.isnan(target_rate):
        return float('nan')

    target_utilization = min(max(target_utilization, 0.0), 1.0)
    if target_utilization == 0:
        return float('inf')

    catch_up_seconds = conf.catch_up_duration.total_seconds()
    restart_seconds = conf.restart_time.total_seconds()

    restart_catch_up_rate = 0.0
    if with_restart and catch_up_seconds > 0:
        restart_catch_up_rate = target_rate * restart_seconds / catch_up_seconds

    return _round_half_up(catch_up_rate + restart_catch_up_rate + target_rate / target_utilization)


def _round_half_up(value: float) -> float:
    if math.isinf(value):
        return value
    return float(math.floor(value + 0.5))


class ScalingMetricEvaluator:
    """Evaluates the collected metric window of one resource"""

    def evaluate(self, conf: AutoScalerConfig,
                 metric_history: Mapping[datetime, CollectedMetrics]) -> EvaluatedMetrics:
        """
        Evaluate every vertex present in the latest sample.

        Args:
            conf: Autoscaler configuration
            metric_history: Time-ordered samples inside the metric window

        Returns:
            vertex id -> evaluated metrics, including thresholds
        """
        if not metric_history:
            return {}

        latest = metric_history[max(metric_history)]
        evaluated: EvaluatedMetrics = {}

        for vertex, sample in latest.items():
            samples = [snapshot[vertex] for snapshot in metric_history.values() if vertex in snapshot]
            evaluated[vertex] = self.compute_processing_rate_thresholds(
                self._evaluate_vertex(conf, sample, samples), conf
            )
            logger.debug(f"Evaluated vertex {vertex}: {self._describe(evaluated[vertex])}")

        return evaluated

    def _evaluate_vertex(self, conf: AutoScalerConfig, latest, samples) -> Dict[ScalingMetric, EvaluatedScalingMetric]:
        true_rates = [s.data_rate / s.load for s in samples if s.load > 0]
        current_true_rate = latest.data_rate / latest.load if latest.load > 0 else float('nan')

        metrics = {
            ScalingMetric.PARALLELISM: EvaluatedScalingMetric.of(latest.parallelism),
            ScalingMetric.LOAD: EvaluatedScalingMetric(
                statistics.mean(s.load for s in samples), latest.load
            ),
            ScalingMetric.TRUE_PROCESSING_RATE: EvaluatedScalingMetric(
                statistics.mean(true_rates) if true_rates else float('nan'), current_true_rate
            ),
            ScalingMetric.CURRENT_PROCESSING_RATE: EvaluatedScalingMetric.of(latest.data_rate),
            ScalingMetric.TARGET_DATA_RATE: EvaluatedScalingMetric(
                statistics.mean(s.data_rate for s in samples), latest.data_rate
            ),
            ScalingMetric.LAG: EvaluatedScalingMetric.of(latest.backlog),
            ScalingMetric.CATCH_UP_DATA_RATE: EvaluatedScalingMetric.of(
                self.catch_up_rate(latest.backlog, conf)
            ),
        }
        if latest.max_parallelism is not None:
            metrics[ScalingMetric.MAX_PARALLELISM] = EvaluatedScalingMetric.of(latest.max_parallelism)
        return metrics

    @staticmethod
    def catch_up_rate(backlog: float, conf: AutoScalerConfig) -> float:
        """Extra records/s needed to drain backlog within the catch-up duration"""
        seconds = conf.catch_up_duration.total_seconds()
        if seconds <= 0 or backlog <= 0:
            return 0.0
        return backlog / seconds

    @staticmethod
    def compute_processing_rate_thresholds(metrics: Mapping[ScalingMetric, EvaluatedScalingMetric],
                                           conf: AutoScalerConfig) -> VertexMetrics:
        """
        Return a copy of metrics with the utilization band thresholds added.

        Restart time is left out here: it changes how far we scale, not
        whether the current utilization is acceptable.
        """
        boundary = conf.target_utilization_boundary
        scale_up_threshold = get_target_processing_capacity(
            metrics, conf, conf.target_utilization + boundary, with_restart=False
        )
        scale_down_threshold = get_target_processing_capacity(
            metrics, conf, conf.target_utilization - boundary, with_restart=False
        )

        result = dict(metrics)
        result[ScalingMetric.SCALE_UP_RATE_THRESHOLD] = EvaluatedScalingMetric.of(scale_up_threshold)
        result[ScalingMetric.SCALE_DOWN_RATE_THRESHOLD] = EvaluatedScalingMetric.of(scale_down_threshold)
        return result

    @staticmethod
    def _describe(metrics: VertexMetrics) -> str:
        return ", ".join(f"{m.value}={v.average:.2f}/{v.current:.2f}" for m, v in metrics.items())
