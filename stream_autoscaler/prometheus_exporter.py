"""
Prometheus Metrics Exporter
Exposes autoscaler decisions and vertex metrics for monitoring and alerting
"""

import logging
import math
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

from stream_autoscaler import __version__
from stream_autoscaler.metrics import EvaluatedMetrics, ScalingMetric
from stream_autoscaler.resource import JobResource

logger = logging.getLogger(__name__)


class AutoscalerMetricsExporter:
    """Export autoscaler metrics to Prometheus"""

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self.port = port
        # Own registry so several exporters (tests) can coexist in one process
        self.registry = registry or CollectorRegistry()

        self.operator_info = Info(
            'stream_autoscaler_operator',
            'Stream autoscaler operator information',
            registry=self.registry
        )

        # Per-vertex state
        self.vertex_parallelism = Gauge(
            'stream_autoscaler_vertex_parallelism',
            'Current parallelism of a job vertex',
            ['namespace', 'resource', 'vertex'],
            registry=self.registry
        )

        self.vertex_recommended_parallelism = Gauge(
            'stream_autoscaler_vertex_recommended_parallelism',
            'Parallelism recommended by the last scaling decision',
            ['namespace', 'resource', 'vertex'],
            registry=self.registry
        )

        self.vertex_true_processing_rate = Gauge(
            'stream_autoscaler_vertex_true_processing_rate',
            'Records/s the vertex could process at full busy time',
            ['namespace', 'resource', 'vertex'],
            registry=self.registry
        )

        self.vertex_target_data_rate = Gauge(
            'stream_autoscaler_vertex_target_data_rate',
            'Records/s the vertex should be able to process',
            ['namespace', 'resource', 'vertex'],
            registry=self.registry
        )

        self.vertex_load = Gauge(
            'stream_autoscaler_vertex_load',
            'Average busy time ratio of a job vertex (0-1)',
            ['namespace', 'resource', 'vertex'],
            registry=self.registry
        )

        # Action counters
        self.scaling_decisions = Counter(
            'stream_autoscaler_scaling_decisions_total',
            'Total number of applied scaling decisions',
            ['namespace', 'resource'],
            registry=self.registry
        )

        self.ineffective_scalings = Counter(
            'stream_autoscaler_ineffective_scalings_total',
            'Total number of ineffective scale-ups detected',
            ['namespace', 'resource'],
            registry=self.registry
        )

        self.reconciliation_errors = Counter(
            'stream_autoscaler_reconciliation_errors_total',
            'Total number of failed autoscaler passes',
            ['namespace', 'resource', 'error'],
            registry=self.registry
        )

        # Performance metrics
        self.decision_duration = Histogram(
            'stream_autoscaler_decision_duration_seconds',
            'Time to run one autoscaler pass',
            ['namespace', 'resource'],
            registry=self.registry
        )

    def start(self):
        """Start Prometheus metrics server"""
        try:
            start_http_server(self.port, registry=self.registry)
            logger.info(f"Prometheus metrics server started on port {self.port}")
            self.operator_info.info({'version': __version__})
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")

    def update_vertex_metrics(self, resource: JobResource, evaluated_metrics: EvaluatedMetrics):
        """Publish the latest evaluated metrics of every vertex"""
        for vertex, metrics in evaluated_metrics.items():
            labels = {'namespace': resource.namespace, 'resource': resource.name, 'vertex': vertex}

            for gauge, metric in (
                (self.vertex_parallelism, ScalingMetric.PARALLELISM),
                (self.vertex_true_processing_rate, ScalingMetric.TRUE_PROCESSING_RATE),
                (self.vertex_target_data_rate, ScalingMetric.TARGET_DATA_RATE),
                (self.vertex_load, ScalingMetric.LOAD),
            ):
                value = metrics.get(metric)
                if value is not None and not math.isnan(value.average):
                    gauge.labels(**labels).set(value.average)

    def record_scaling(self, resource: JobResource, recommended: dict):
        """Record an applied decision; recommended maps vertex -> new parallelism"""
        self.scaling_decisions.labels(namespace=resource.namespace, resource=resource.name).inc()
        for vertex, parallelism in recommended.items():
            self.vertex_recommended_parallelism.labels(
                namespace=resource.namespace,
                resource=resource.name,
                vertex=vertex
            ).set(parallelism)

    def record_ineffective_scaling(self, resource: JobResource):
        self.ineffective_scalings.labels(namespace=resource.namespace, resource=resource.name).inc()

    def record_error(self, resource: JobResource, error: str):
        self.reconciliation_errors.labels(
            namespace=resource.namespace,
            resource=resource.name,
            error=error
        ).inc()

    def record_decision_time(self, resource: JobResource, duration: float):
        """Record time taken to make decision"""
        self.decision_duration.labels(
            namespace=resource.namespace,
            resource=resource.name
        ).observe(duration)
