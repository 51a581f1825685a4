"""
Job Status Observer
Reconciles the job status recorded on a resource with the jobs running on its cluster
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from stream_autoscaler.clock import Clock, SystemClock, to_epoch_millis
from stream_autoscaler.events import EventComponent, EventReason, EventRecorder, EventType
from stream_autoscaler.exceptions import AutoscalerError, JobListTimeoutError, UnknownJobError
from stream_autoscaler.resource import DeploymentMode, JobResource, JobState, JobStatus

logger = logging.getLogger(__name__)

UNKNOWN_JOB_MESSAGE = "Unrecognized Job for Application deployment"
JOB_LIST_TIMEOUT_MESSAGE = "Timed out listing jobs from the cluster"


@dataclass
class JobStatusMessage:
    """A job as listed by the cluster"""
    job_id: str
    job_name: str
    state: JobState
    start_time: Optional[int] = None  # epoch millis


class TargetJobFilter:
    """Picks the job a resource owns out of the cluster's job list"""

    def filter_target_job(self, status: JobStatus, jobs: List[JobStatusMessage]) -> Optional[JobStatusMessage]:
        raise NotImplementedError


class SingleJobFilter(TargetJobFilter):
    """
    Application clusters run exactly one job.

    Before a job id is recorded the first listed job is taken; afterwards only
    the recorded job is accepted.
    """

    def filter_target_job(self, status: JobStatus, jobs: List[JobStatusMessage]) -> Optional[JobStatusMessage]:
        if not jobs:
            return None
        if not status.job_id:
            return jobs[0]
        for job in jobs:
            if job.job_id == status.job_id:
                return job
        return None


class SessionJobFilter(TargetJobFilter):
    """Session clusters run many jobs; match the recorded job id"""

    def filter_target_job(self, status: JobStatus, jobs: List[JobStatusMessage]) -> Optional[JobStatusMessage]:
        if not status.job_id:
            return None
        return next((job for job in jobs if job.job_id == status.job_id), None)


def filter_for_mode(mode: DeploymentMode) -> TargetJobFilter:
    if mode == DeploymentMode.SESSION:
        return SessionJobFilter()
    return SingleJobFilter()


class JobStatusObserver:
    """Observes the job of one resource per reconciliation pass"""

    def __init__(self, event_recorder: EventRecorder, job_filter: Optional[TargetJobFilter] = None,
                 clock: Optional[Clock] = None):
        self.event_recorder = event_recorder
        self.job_filter = job_filter
        self.clock = clock or SystemClock()

    def observe(self, resource: JobResource, list_jobs: Callable[[], List[JobStatusMessage]]) -> bool:
        """
        Update the resource's job status from the cluster.

        Returns:
            True if the target job was found and its status updated
        """
        job_status = resource.status.job_status
        job_filter = self.job_filter or filter_for_mode(resource.spec.mode)

        try:
            jobs = list_jobs()
        except JobListTimeoutError:
            self.on_timeout(resource)
            return False

        if not jobs:
            logger.info(f"{resource.key} - No jobs found on the cluster")
            self._if_running_move_to_reconciling(resource)
            return False

        target_job = job_filter.filter_target_job(job_status, jobs)
        if target_job is None:
            self.on_target_job_not_found(resource)
            return False

        self.update_job_status(resource, target_job)
        return True

    def on_timeout(self, resource: JobResource):
        logger.error(f"{resource.key} - {JOB_LIST_TIMEOUT_MESSAGE}")
        resource.status.job_status.state = JobState.RECONCILING
        self._record_reconciliation_error(resource, JobListTimeoutError(JOB_LIST_TIMEOUT_MESSAGE))
        self.event_recorder.trigger_event(
            resource, EventType.WARNING, EventReason.MISSING, EventComponent.JOB, JOB_LIST_TIMEOUT_MESSAGE
        )

    def on_target_job_not_found(self, resource: JobResource):
        if resource.spec.mode == DeploymentMode.SESSION:
            logger.warning(
                f"{resource.key} - Job {resource.status.job_status.job_id} not found on session cluster"
            )
            return
        self._set_unknown_job_error(resource)

    def _set_unknown_job_error(self, resource: JobResource):
        """The application cluster runs a job other than the one we expect"""
        resource.status.job_status.state = JobState.RECONCILING
        logger.error(f"{resource.key} - {UNKNOWN_JOB_MESSAGE}")
        self._record_reconciliation_error(resource, UnknownJobError(UNKNOWN_JOB_MESSAGE))
        self.event_recorder.trigger_event(
            resource, EventType.WARNING, EventReason.MISSING, EventComponent.JOB, UNKNOWN_JOB_MESSAGE
        )

    def _if_running_move_to_reconciling(self, resource: JobResource):
        job_status = resource.status.job_status
        if job_status.state == JobState.RUNNING:
            job_status.state = JobState.RECONCILING
            logger.info(f"{resource.key} - Job was running but is no longer listed, moving to RECONCILING")

    @staticmethod
    def _record_reconciliation_error(resource: JobResource, error: AutoscalerError):
        resource.status.error = json.dumps({'type': type(error).__name__, 'message': str(error)})

    def update_job_status(self, resource: JobResource, job: JobStatusMessage):
        """Copy the listed job into the status; update_time moves only on state change"""
        job_status = resource.status.job_status
        previous_state = job_status.state

        job_status.job_id = job.job_id
        job_status.job_name = job.job_name
        job_status.start_time = job.start_time
        job_status.state = job.state

        if previous_state == job.state:
            return

        job_status.update_time = to_epoch_millis(self.clock.now())
        if job.state == JobState.RUNNING and resource.status.error:
            resource.status.error = None

        message = f"Job status changed from {previous_state.value if previous_state else None} to {job.state.value}"
        logger.info(f"{resource.key} - {message}")
        self.event_recorder.trigger_event(
            resource, EventType.NORMAL, EventReason.JOB_STATUS_CHANGED, EventComponent.JOB, message
        )
