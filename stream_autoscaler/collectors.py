"""
Metric and Job Collectors
Per-vertex samples from Prometheus and job listings from the Flink REST API
"""

import logging
from typing import Dict, List, Optional

import requests
from prometheus_api_client import PrometheusConnect

from stream_autoscaler.exceptions import JobListTimeoutError, MetricsCollectionError
from stream_autoscaler.job_observer import JobStatusMessage
from stream_autoscaler.metrics import CollectedMetrics, CollectedVertexMetrics
from stream_autoscaler.resilience import CircuitBreaker, CircuitBreakerOpenError
from stream_autoscaler.resource import JobResource, JobState

logger = logging.getLogger(__name__)

TASK_METRIC_PREFIX = "flink_taskmanager_job_task_"
VERTEX_LABEL = "task_id"


class MetricsCollector:
    """Source of one metric sample per vertex of a resource's job"""

    def collect(self, resource: JobResource) -> CollectedMetrics:
        raise NotImplementedError


class PrometheusMetricsCollector(MetricsCollector):
    """
    Reads task metrics exported by Flink's Prometheus reporter.

    Subtask series are aggregated per vertex: input rates and backlog are
    summed, busy time is averaged and the number of busy-time series is the
    vertex parallelism.
    """

    def __init__(self, prometheus_url: str, prom: PrometheusConnect = None,
                 job_lister: Optional["FlinkRestJobLister"] = None):
        self.prom = prom or PrometheusConnect(url=prometheus_url, disable_ssl=True)
        # the reporter does not export max parallelism, the JobManager knows it
        self.job_lister = job_lister
        self.prometheus_circuit = CircuitBreaker(
            failure_threshold=5,
            timeout=60,
            name="prometheus"
        )

    def _query_prometheus(self, query: str):
        """Query Prometheus through the circuit breaker"""
        return self.prometheus_circuit.call(self.prom.custom_query, query)

    def _query_by_vertex(self, query: str) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for series in self._query_prometheus(query) or []:
            vertex = series.get('metric', {}).get(VERTEX_LABEL)
            if vertex is None:
                continue
            values[vertex] = float(series['value'][1])
        return values

    def _max_parallelism(self, resource: JobResource, job_id: str) -> Dict[str, int]:
        if self.job_lister is None:
            return {}
        try:
            return self.job_lister.get_vertex_max_parallelism(resource, job_id)
        except requests.RequestException as e:
            logger.warning(f"{resource.key} - Could not read vertex max parallelism: {e}")
            return {}

    def collect(self, resource: JobResource) -> CollectedMetrics:
        job_id = resource.status.job_status.job_id
        if not job_id:
            raise MetricsCollectionError(f"{resource.key} has no job id to collect metrics for")

        selector = f'job_id="{job_id}"'
        busy_metric = f'{TASK_METRIC_PREFIX}busyTimeMsPerSecond{{{selector}}}'

        try:
            parallelism = self._query_by_vertex(f'count by ({VERTEX_LABEL}) ({busy_metric})')
            busy_time = self._query_by_vertex(f'avg by ({VERTEX_LABEL}) ({busy_metric})')
            records_in = self._query_by_vertex(
                f'sum by ({VERTEX_LABEL}) ({TASK_METRIC_PREFIX}numRecordsInPerSecond{{{selector}}})'
            )
            records_out = self._query_by_vertex(
                f'sum by ({VERTEX_LABEL}) ({TASK_METRIC_PREFIX}numRecordsOutPerSecond{{{selector}}})'
            )
            backlog = self._query_by_vertex(
                f'sum by ({VERTEX_LABEL}) ({TASK_METRIC_PREFIX}operator_pendingRecords{{{selector}}})'
            )
        except CircuitBreakerOpenError as e:
            raise MetricsCollectionError(str(e)) from e
        except Exception as e:
            raise MetricsCollectionError(f"Error querying Prometheus for {resource.key}: {e}") from e

        max_parallelism = self._max_parallelism(resource, job_id)

        sample: CollectedMetrics = {}
        for vertex, vertex_parallelism in parallelism.items():
            if vertex not in busy_time:
                logger.debug(f"{resource.key} - No busy time for {vertex}, skipping")
                continue
            # sources have no input records; their output rate is what they ingest
            data_rate = records_in.get(vertex, 0.0) or records_out.get(vertex, 0.0)
            sample[vertex] = CollectedVertexMetrics(
                parallelism=int(vertex_parallelism),
                data_rate=data_rate,
                busy_time_ms_per_sec=busy_time[vertex],
                backlog=backlog.get(vertex, 0.0),
                max_parallelism=max_parallelism.get(vertex)
            )

        logger.debug(f"{resource.key} - Collected metrics for {len(sample)} vertices")
        return sample


class FlinkRestJobLister:
    """Lists the jobs of a resource's cluster through the JobManager REST API"""

    def __init__(self, url_template: str = "http://{name}-rest.{namespace}:8081", timeout: float = 10):
        self.url_template = url_template
        self.timeout = timeout

    def _base_url(self, resource: JobResource) -> str:
        return self.url_template.format(name=resource.name, namespace=resource.namespace)

    def get_vertex_max_parallelism(self, resource: JobResource, job_id: str) -> Dict[str, int]:
        """Max parallelism per vertex id, from the job details; unset (<= 0) values are omitted"""
        url = f"{self._base_url(resource)}/jobs/{job_id}"
        response = requests.get(url, timeout=self.timeout)
        response.raise_for_status()

        max_parallelism = {}
        for vertex in response.json().get('vertices', []):
            value = vertex.get('maxParallelism')
            if vertex.get('id') and value is not None and int(value) > 0:
                max_parallelism[vertex['id']] = int(value)
        return max_parallelism

    def list_jobs(self, resource: JobResource) -> List[JobStatusMessage]:
        url = self._base_url(resource) + "/jobs/overview"

        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.Timeout as e:
            raise JobListTimeoutError(f"Timed out listing jobs at {url}") from e

        jobs = []
        for job in response.json().get('jobs', []):
            state = JobState.parse(job.get('state'))
            if state is None:
                continue
            jobs.append(JobStatusMessage(
                job_id=job['jid'],
                job_name=job.get('name', ''),
                state=state,
                start_time=job.get('start-time')
            ))
        return jobs
