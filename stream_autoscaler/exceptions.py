"""
Autoscaler exceptions
"""


class AutoscalerError(Exception):
    """Base class for autoscaler errors"""


class UnknownJobError(AutoscalerError):
    """The cluster runs a job that is not the one the resource owns"""


class JobListTimeoutError(AutoscalerError):
    """Jobs could not be listed from the cluster in time"""


class MetricsCollectionError(AutoscalerError):
    """Vertex metrics could not be collected this cycle"""
