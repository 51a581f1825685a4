"""
Stream Autoscaler Operator
Periodically reconciles every autoscaled streaming deployment in the cluster
"""

import functools
import logging
import os
import signal
import sys
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from stream_autoscaler import __version__
from stream_autoscaler.autoscaler import JobAutoScaler
from stream_autoscaler.clock import SystemClock
from stream_autoscaler.collectors import FlinkRestJobLister, PrometheusMetricsCollector
from stream_autoscaler.config import ConfigLoader, OperatorSettings
from stream_autoscaler.events import AutoscalerEvent, EventReason, EventRecorder
from stream_autoscaler.history import ConfigMapInfoStore, InMemoryInfoStore
from stream_autoscaler.job_observer import JobStatusObserver
from stream_autoscaler.logging_config import get_logger, setup_structured_logging
from stream_autoscaler.overrides import KubernetesOverrideApplier
from stream_autoscaler.prometheus_exporter import AutoscalerMetricsExporter
from stream_autoscaler.resilience import retry_with_backoff
from stream_autoscaler.resource import JobResource
from stream_autoscaler.scaling_executor import ScalingExecutor

logger = logging.getLogger(__name__)


def load_kubernetes_config():
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


class AutoscalerOperator:
    """Runs one autoscaler pass per custom resource every check interval"""

    def __init__(self, settings: OperatorSettings, custom_api: client.CustomObjectsApi,
                 core_v1: client.CoreV1Api, exporter: AutoscalerMetricsExporter = None,
                 webhooks: Dict[str, str] = None):
        self.settings = settings
        self.custom_api = custom_api
        self.core_v1 = core_v1
        self.exporter = exporter
        self.shutdown_event = threading.Event()
        self.known_resources: Dict[str, JobResource] = {}

        clock = SystemClock()
        owner_api_version = f"{settings.crd_group}/{settings.crd_version}"
        self.event_recorder = EventRecorder(
            core_v1=core_v1,
            clock=clock,
            webhooks=webhooks,
            owner_api_version=owner_api_version
        )
        self.event_recorder.add_listener(self._on_event)

        if settings.store == 'memory':
            store = InMemoryInfoStore()
        else:
            store = ConfigMapInfoStore(core_v1, owner_api_version=owner_api_version)

        override_applier = KubernetesOverrideApplier(
            custom_api,
            group=settings.crd_group,
            version=settings.crd_version,
            plural=settings.crd_plural,
            dry_run=settings.dry_run
        )

        self.job_lister = FlinkRestJobLister(settings.flink_rest_url_template)
        self.autoscaler = JobAutoScaler(
            store=store,
            collector=PrometheusMetricsCollector(settings.prometheus_url, job_lister=self.job_lister),
            executor=ScalingExecutor(self.event_recorder, override_applier, clock),
            observer=JobStatusObserver(self.event_recorder, clock=clock),
            exporter=exporter,
            clock=clock,
            defaults=settings.autoscaler_defaults
        )

    def _on_event(self, resource: JobResource, event: AutoscalerEvent):
        if self.exporter and event.reason == EventReason.INEFFECTIVE_SCALING:
            self.exporter.record_ineffective_scaling(resource)

    def setup_signal_handlers(self):
        """Setup graceful shutdown handlers"""
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.shutdown_event.set()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

    @retry_with_backoff()
    def list_resources(self) -> List[JobResource]:
        if self.settings.watch_namespace:
            response = self.custom_api.list_namespaced_custom_object(
                self.settings.crd_group, self.settings.crd_version,
                self.settings.watch_namespace, self.settings.crd_plural
            )
        else:
            response = self.custom_api.list_cluster_custom_object(
                self.settings.crd_group, self.settings.crd_version, self.settings.crd_plural
            )
        return [JobResource.from_custom_object(item) for item in response.get('items', [])]

    @retry_with_backoff()
    def patch_status(self, resource: JobResource):
        job_status = resource.status.job_status
        body = {
            'status': {
                'jobStatus': {
                    'jobId': job_status.job_id,
                    'jobName': job_status.job_name,
                    'state': job_status.state.value if job_status.state else None,
                    'startTime': str(job_status.start_time) if job_status.start_time is not None else None,
                    'updateTime': str(job_status.update_time) if job_status.update_time is not None else None
                },
                'error': resource.status.error
            }
        }
        if self.settings.dry_run:
            logger.debug(f"{resource.key} - [DRY RUN] Would patch status {body}")
            return
        self.custom_api.patch_namespaced_custom_object_status(
            self.settings.crd_group, self.settings.crd_version, resource.namespace,
            self.settings.crd_plural, resource.name, body
        )

    def reconcile(self, resource: JobResource):
        """One autoscaler pass for one resource"""
        resource_logger = get_logger(__name__, {'resource': resource.key})
        previous_status = (replace(resource.status.job_status), resource.status.error)

        scaled = self.autoscaler.scale(resource, functools.partial(self.job_lister.list_jobs, resource))
        if scaled:
            resource_logger.info(f"{resource.key} - Scaling decision applied")

        if (resource.status.job_status, resource.status.error) != previous_status:
            try:
                self.patch_status(resource)
            except ApiException as e:
                resource_logger.error(f"{resource.key} - Failed to update status: {e}")

    def run_once(self):
        resources = self.list_resources()
        seen = {resource.key for resource in resources}

        for resource in resources:
            if self.shutdown_event.is_set():
                break
            self.known_resources[resource.key] = resource
            self.reconcile(resource)

        for key in set(self.known_resources) - seen:
            self.autoscaler.cleanup(self.known_resources.pop(key))

    def run(self):
        """Main operator loop"""
        logger.info(
            f"Stream autoscaler {__version__} started: namespace={self.settings.watch_namespace or '<all>'}, "
            f"resources={self.settings.crd_plural}.{self.settings.crd_group}, "
            f"check_interval={self.settings.check_interval}s, dry_run={self.settings.dry_run}"
        )

        iteration = 0
        while not self.shutdown_event.is_set():
            iteration += 1
            logger.info(f"Iteration {iteration} - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)

            if self.shutdown_event.wait(timeout=self.settings.check_interval):
                break

        logger.info("Stream autoscaler stopped")


def _load_webhooks() -> Dict[str, str]:
    webhooks = {}
    if os.getenv('SLACK_WEBHOOK'):
        webhooks['slack'] = os.getenv('SLACK_WEBHOOK')
    if os.getenv('GENERIC_WEBHOOK'):
        webhooks['generic'] = os.getenv('GENERIC_WEBHOOK')
    return webhooks


def main():
    """Main entry point"""
    setup_structured_logging(
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
        json_format=os.getenv('LOG_FORMAT', 'json').lower() == 'json',
        extra_fields={
            'component': 'stream-autoscaler',
            'version': __version__
        }
    )

    load_kubernetes_config()
    core_v1 = client.CoreV1Api()

    config_loader = ConfigLoader(
        namespace=os.getenv('OPERATOR_NAMESPACE', 'autoscaler-system'),
        configmap_name=os.getenv('CONFIGMAP_NAME', 'stream-autoscaler-config'),
        core_v1=core_v1
    )
    try:
        settings = config_loader.load()
    except ValueError as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    setup_structured_logging(
        log_level=settings.log_level,
        json_format=settings.log_format.lower() == 'json',
        extra_fields={
            'component': 'stream-autoscaler',
            'version': __version__
        }
    )

    exporter = AutoscalerMetricsExporter(port=settings.metrics_port)
    exporter.start()

    operator = AutoscalerOperator(
        settings,
        custom_api=client.CustomObjectsApi(),
        core_v1=core_v1,
        exporter=exporter,
        webhooks=_load_webhooks()
    )
    operator.setup_signal_handlers()
    operator.run()


if __name__ == "__main__":
    main()
