"""
Job Resource Model
Plain data view of a managed streaming deployment and its job status
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PARALLELISM_OVERRIDES = "pipeline.jobvertex-parallelism-overrides"


class JobState(Enum):
    """Run-state of a job as reported by the cluster"""
    INITIALIZING = "INITIALIZING"
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    FAILING = "FAILING"
    FAILED = "FAILED"
    CANCELLING = "CANCELLING"
    CANCELED = "CANCELED"
    FINISHED = "FINISHED"
    RESTARTING = "RESTARTING"
    SUSPENDED = "SUSPENDED"
    RECONCILING = "RECONCILING"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["JobState"]:
        if not value:
            return None
        try:
            return cls(value.upper())
        except ValueError:
            logger.warning(f"Unknown job state: {value}")
            return None


class DeploymentMode(Enum):
    """How jobs are deployed on the cluster"""
    APPLICATION = "application"  # exactly one job per cluster
    SESSION = "session"          # many jobs share the cluster


@dataclass
class JobStatus:
    """Last observed status of the job owned by a resource"""
    job_id: Optional[str] = None
    job_name: Optional[str] = None
    state: Optional[JobState] = None
    start_time: Optional[int] = None    # epoch millis
    update_time: Optional[int] = None   # epoch millis, refreshed on state change


@dataclass
class ResourceStatus:
    """Status sub-resource"""
    job_status: JobStatus = field(default_factory=JobStatus)
    error: Optional[str] = None


@dataclass
class ResourceSpec:
    """Desired state; configuration holds job and autoscaler options as strings"""
    configuration: Dict[str, str] = field(default_factory=dict)
    mode: DeploymentMode = DeploymentMode.APPLICATION


@dataclass
class JobResource:
    """A managed streaming deployment"""
    namespace: str
    name: str
    spec: ResourceSpec = field(default_factory=ResourceSpec)
    status: ResourceStatus = field(default_factory=ResourceStatus)
    uid: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_custom_object(cls, obj: Dict[str, Any]) -> "JobResource":
        """Build from a custom object as returned by CustomObjectsApi"""
        metadata = obj.get('metadata', {})
        spec = obj.get('spec', {}) or {}
        status = obj.get('status', {}) or {}
        job_status = status.get('jobStatus', {}) or {}

        mode = DeploymentMode.SESSION if spec.get('mode') == 'session' else DeploymentMode.APPLICATION

        return cls(
            namespace=metadata.get('namespace', 'default'),
            name=metadata.get('name', ''),
            uid=metadata.get('uid'),
            spec=ResourceSpec(
                configuration={k: str(v) for k, v in (spec.get('flinkConfiguration') or {}).items()},
                mode=mode
            ),
            status=ResourceStatus(
                job_status=JobStatus(
                    job_id=job_status.get('jobId'),
                    job_name=job_status.get('jobName'),
                    state=JobState.parse(job_status.get('state')),
                    start_time=_to_int(job_status.get('startTime')),
                    update_time=_to_int(job_status.get('updateTime'))
                ),
                error=status.get('error')
            )
        )


def _to_int(value) -> Optional[int]:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric timestamp: {value}")
        return None


def format_overrides(overrides: Dict[str, int]) -> str:
    """Render an override map as 'vertex:parallelism,...' sorted by vertex id"""
    return ",".join(f"{vertex}:{parallelism}" for vertex, parallelism in sorted(overrides.items()))


def parse_overrides(value: Optional[str]) -> Dict[str, int]:
    """Parse 'vertex:parallelism,...'; malformed entries are skipped"""
    overrides: Dict[str, int] = {}
    if not value:
        return overrides

    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        vertex, sep, parallelism = entry.partition(":")
        if not sep:
            logger.warning(f"Skipping malformed parallelism override: {entry}")
            continue
        try:
            overrides[vertex.strip()] = int(parallelism)
        except ValueError:
            logger.warning(f"Skipping malformed parallelism override: {entry}")
    return overrides


def get_parallelism_overrides(resource: JobResource) -> Dict[str, int]:
    return parse_overrides(resource.spec.configuration.get(PARALLELISM_OVERRIDES))


def set_parallelism_overrides(resource: JobResource, overrides: Dict[str, int]) -> bool:
    """
    Write the override map into the resource configuration.

    Returns:
        True if the stored value changed
    """
    config = resource.spec.configuration
    previous = config.get(PARALLELISM_OVERRIDES)

    if not overrides:
        config.pop(PARALLELISM_OVERRIDES, None)
        return previous is not None

    rendered = format_overrides(overrides)
    config[PARALLELISM_OVERRIDES] = rendered
    return rendered != previous
