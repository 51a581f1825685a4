"""
Job Autoscaler
One reconciliation pass per resource: observe, collect, evaluate, decide, persist
"""

import logging
import time
from typing import Callable, List, Mapping, Optional

from stream_autoscaler.clock import Clock, SystemClock, from_epoch_millis
from stream_autoscaler.collectors import MetricsCollector
from stream_autoscaler.config import AutoScalerConfig
from stream_autoscaler.exceptions import MetricsCollectionError
from stream_autoscaler.history import AutoScalerInfoStore
from stream_autoscaler.job_observer import JobStatusMessage, JobStatusObserver
from stream_autoscaler.metric_evaluator import ScalingMetricEvaluator
from stream_autoscaler.prometheus_exporter import AutoscalerMetricsExporter
from stream_autoscaler.resource import (
    PARALLELISM_OVERRIDES, JobResource, JobState, get_parallelism_overrides, set_parallelism_overrides
)
from stream_autoscaler.scaling_executor import ScalingExecutor

logger = logging.getLogger(__name__)


class JobAutoScaler:
    """Runs the autoscaler for resources one pass at a time"""

    def __init__(
        self,
        store: AutoScalerInfoStore,
        collector: MetricsCollector,
        executor: ScalingExecutor,
        observer: JobStatusObserver,
        evaluator: Optional[ScalingMetricEvaluator] = None,
        exporter: Optional[AutoscalerMetricsExporter] = None,
        clock: Optional[Clock] = None,
        defaults: Optional[Mapping[str, str]] = None
    ):
        self.store = store
        self.collector = collector
        self.executor = executor
        self.observer = observer
        self.evaluator = evaluator or ScalingMetricEvaluator()
        self.exporter = exporter
        self.clock = clock or SystemClock()
        self.defaults = AutoScalerConfig.from_mapping(defaults or {})

    def get_config(self, resource: JobResource) -> AutoScalerConfig:
        """Operator defaults overridden by the resource's own configuration"""
        return AutoScalerConfig.from_mapping(resource.spec.configuration, base=self.defaults)

    def scale(self, resource: JobResource, list_jobs: Callable[[], List[JobStatusMessage]]) -> bool:
        """
        Run one autoscaler pass for a resource.

        Args:
            resource: Resource to reconcile; its status and configuration are updated in place
            list_jobs: Lists the jobs currently running on the resource's cluster

        Returns:
            True if the resource was rescaled
        """
        start_time = time.monotonic()
        try:
            return self._scale(resource, list_jobs)
        except MetricsCollectionError as e:
            logger.warning(f"{resource.key} - Skipping autoscaler pass, metrics unavailable: {e}")
            self._record_error(resource, type(e).__name__)
            return False
        except Exception as e:
            logger.error(f"{resource.key} - Autoscaler pass failed: {e}", exc_info=True)
            self._record_error(resource, type(e).__name__)
            return False
        finally:
            if self.exporter:
                self.exporter.record_decision_time(resource, time.monotonic() - start_time)

    def _scale(self, resource: JobResource, list_jobs: Callable[[], List[JobStatusMessage]]) -> bool:
        job_found = self.observer.observe(resource, list_jobs)

        try:
            conf = self.get_config(resource)
        except ValueError as e:
            logger.error(f"{resource.key} - Invalid autoscaler configuration: {e}")
            self._record_error(resource, 'InvalidConfiguration')
            return False

        if not conf.enabled:
            logger.debug(f"{resource.key} - Autoscaler is disabled")
            self._remove_overrides(resource)
            return False

        job_status = resource.status.job_status
        if not job_found or job_status.state != JobState.RUNNING:
            logger.info(f"{resource.key} - Job is not running, skipping autoscaler pass")
            return False

        info = self.store.load(resource)
        now = self.clock.now()

        if job_status.update_time is not None:
            info.update_job_update_ts(from_epoch_millis(job_status.update_time))

        sample = self.collector.collect(resource)
        if not sample:
            logger.info(f"{resource.key} - No vertex metrics collected yet")
            self.store.save(resource, info)
            return False

        info.add_metrics(now, sample)
        window_full = info.is_metric_window_full(now, conf.metrics_window)
        info.trim_metric_history(now, conf.metrics_window)

        if not window_full:
            logger.info(f"{resource.key} - Metric window is not full yet, collected {len(info.get_metric_history())} samples")
            self.store.save(resource, info)
            return False

        evaluated = self.evaluator.evaluate(conf, info.get_metric_history())
        if self.exporter:
            self.exporter.update_vertex_metrics(resource, evaluated)

        scaled = self.executor.scale_resource(resource, info, conf, evaluated)
        self.store.save(resource, info)

        if scaled:
            logger.info(f"{resource.key} - Rescaled to {resource.spec.configuration.get(PARALLELISM_OVERRIDES)}")
            if self.exporter:
                self.exporter.record_scaling(resource, get_parallelism_overrides(resource))
        return scaled

    def _remove_overrides(self, resource: JobResource):
        if not set_parallelism_overrides(resource, {}):
            return
        logger.info(f"{resource.key} - Autoscaler disabled, removing parallelism overrides")
        if self.executor.override_applier is not None:
            self.executor.override_applier(resource)

    def _record_error(self, resource: JobResource, error: str):
        if self.exporter:
            self.exporter.record_error(resource, error)

    def cleanup(self, resource: JobResource):
        """Forget everything stored for a deleted resource"""
        logger.info(f"{resource.key} - Cleaning up autoscaler state")
        self.store.delete(resource)
