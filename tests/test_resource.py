"""
Tests for job resource model
"""
from stream_autoscaler.resource import (
    PARALLELISM_OVERRIDES, DeploymentMode, JobResource, JobState, format_overrides,
    get_parallelism_overrides, parse_overrides, set_parallelism_overrides
)


CUSTOM_OBJECT = {
    'apiVersion': 'flink.apache.org/v1beta1',
    'kind': 'FlinkDeployment',
    'metadata': {'name': 'orders', 'namespace': 'streaming', 'uid': 'uid-1'},
    'spec': {
        'flinkConfiguration': {
            'kubernetes.operator.job.autoscaler.enabled': 'true',
            'taskmanager.numberOfTaskSlots': 2,
        }
    },
    'status': {
        'jobStatus': {
            'jobId': 'a1b2c3d4',
            'jobName': 'orders-enrichment',
            'state': 'RUNNING',
            'startTime': '1700000000000',
            'updateTime': '1700000060000'
        }
    }
}


class TestJobResource:
    """Test JobResource construction"""

    def test_from_custom_object(self):
        resource = JobResource.from_custom_object(CUSTOM_OBJECT)

        assert resource.key == "streaming/orders"
        assert resource.uid == "uid-1"
        assert resource.spec.mode == DeploymentMode.APPLICATION
        assert resource.spec.configuration['taskmanager.numberOfTaskSlots'] == '2'
        job_status = resource.status.job_status
        assert job_status.job_id == 'a1b2c3d4'
        assert job_status.state == JobState.RUNNING
        assert job_status.start_time == 1700000000000
        assert job_status.update_time == 1700000060000
        assert resource.status.error is None

    def test_from_custom_object_without_status(self):
        resource = JobResource.from_custom_object({
            'metadata': {'name': 'fresh', 'namespace': 'streaming'},
            'spec': {'mode': 'session'}
        })

        assert resource.spec.mode == DeploymentMode.SESSION
        assert resource.spec.configuration == {}
        assert resource.status.job_status.state is None
        assert resource.status.job_status.update_time is None

    def test_parse_job_state(self):
        assert JobState.parse("running") == JobState.RUNNING
        assert JobState.parse("RECONCILING") == JobState.RECONCILING
        assert JobState.parse("BOGUS") is None
        assert JobState.parse(None) is None


class TestParallelismOverrides:
    """Test override map encoding"""

    def test_format_sorted(self):
        assert format_overrides({"v2": 3, "v1": 8}) == "v1:8,v2:3"

    def test_parse(self):
        assert parse_overrides("v1:8, v2:3") == {"v1": 8, "v2": 3}
        assert parse_overrides("") == {}
        assert parse_overrides(None) == {}

    def test_parse_skips_malformed(self):
        assert parse_overrides("v1:8,broken,v2:x") == {"v1": 8}

    def test_set_reports_change(self):
        resource = JobResource(namespace="streaming", name="orders")

        assert set_parallelism_overrides(resource, {"v1": 2}) is True
        assert set_parallelism_overrides(resource, {"v1": 2}) is False
        assert get_parallelism_overrides(resource) == {"v1": 2}

    def test_set_empty_removes_key(self):
        resource = JobResource(namespace="streaming", name="orders")
        resource.spec.configuration[PARALLELISM_OVERRIDES] = "v1:2"

        assert set_parallelism_overrides(resource, {}) is True
        assert PARALLELISM_OVERRIDES not in resource.spec.configuration
        assert set_parallelism_overrides(resource, {}) is False
