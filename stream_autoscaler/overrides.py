"""
Override Applier
Writes parallelism overrides back to the custom resource in the cluster
"""

import logging

from kubernetes import client

from stream_autoscaler.resilience import retry_with_backoff
from stream_autoscaler.resource import PARALLELISM_OVERRIDES, JobResource

logger = logging.getLogger(__name__)


class KubernetesOverrideApplier:
    """Patches spec.flinkConfiguration of the resource with its current override value"""

    def __init__(self, custom_api: client.CustomObjectsApi, group: str = "flink.apache.org",
                 version: str = "v1beta1", plural: str = "flinkdeployments", dry_run: bool = False):
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural
        self.dry_run = dry_run

    def __call__(self, resource: JobResource):
        self.apply(resource)

    @retry_with_backoff()
    def apply(self, resource: JobResource):
        value = resource.spec.configuration.get(PARALLELISM_OVERRIDES)

        if self.dry_run:
            logger.info(f"{resource.key} - [DRY RUN] Would set {PARALLELISM_OVERRIDES}={value}")
            return

        # merge patch: None removes the key
        body = {'spec': {'flinkConfiguration': {PARALLELISM_OVERRIDES: value}}}
        self.custom_api.patch_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=resource.namespace,
            plural=self.plural,
            name=resource.name,
            body=body
        )
        logger.info(f"{resource.key} - Applied {PARALLELISM_OVERRIDES}={value}")
