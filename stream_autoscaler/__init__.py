"""
Streaming Job Autoscaler
Per-vertex parallelism autoscaling for Kubernetes-managed streaming jobs
"""

__version__ = "0.1.0"
