"""
Autoscaler History
Per-resource metric and scaling history, and the stores that persist it between passes
"""

import json
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from stream_autoscaler.config import AutoScalerConfig
from stream_autoscaler.metrics import (
    CollectedMetrics, CollectedVertexMetrics, VertexMetrics,
    metrics_from_dict, metrics_to_dict
)
from stream_autoscaler.resilience import retry_with_backoff
from stream_autoscaler.resource import JobResource

logger = logging.getLogger(__name__)


@dataclass
class ScalingSummary:
    """A parallelism change decided for one vertex"""
    current_parallelism: int
    new_parallelism: int
    metrics: VertexMetrics
    # processing rate the new parallelism is expected to reach
    expected_processing_rate: float = float('nan')

    def __post_init__(self):
        if self.current_parallelism == self.new_parallelism:
            raise ValueError(
                f"Scaling summary requires a parallelism change, got {self.current_parallelism} -> {self.new_parallelism}"
            )

    @property
    def is_scaled_up(self) -> bool:
        return self.new_parallelism > self.current_parallelism

    def to_dict(self) -> Dict:
        return {
            'currentParallelism': self.current_parallelism,
            'newParallelism': self.new_parallelism,
            'expectedProcessingRate': self.expected_processing_rate,
            'metrics': metrics_to_dict(self.metrics)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ScalingSummary":
        return cls(
            current_parallelism=int(data['currentParallelism']),
            new_parallelism=int(data['newParallelism']),
            metrics=metrics_from_dict(data.get('metrics', {})),
            expected_processing_rate=float(data.get('expectedProcessingRate', math.nan))
        )


@dataclass
class AutoScalerInfo:
    """
    Autoscaler state owned by one resource.

    Holds the collected metric window, the scaling decisions per vertex and the
    job update time the metric window belongs to. Mutated by one reconciliation
    pass at a time.
    """
    metric_history: "OrderedDict[datetime, CollectedMetrics]" = field(default_factory=OrderedDict)
    scaling_history: Dict[str, "OrderedDict[datetime, ScalingSummary]"] = field(default_factory=dict)
    job_update_ts: Optional[datetime] = None

    # ---- metric window ----

    def update_job_update_ts(self, job_update_ts: datetime) -> bool:
        """
        Track the job's last status change; a newer one means the job restarted.

        Returns:
            True if the metric history was discarded
        """
        if self.job_update_ts is not None and job_update_ts <= self.job_update_ts:
            return False

        cleared = bool(self.metric_history)
        if cleared:
            logger.info(f"Job status changed at {job_update_ts.isoformat()}, clearing metric history")
        self.clear_metric_history()
        self.job_update_ts = job_update_ts
        return cleared

    def add_metrics(self, now: datetime, sample: CollectedMetrics):
        self.metric_history[now] = dict(sample)
        self.metric_history = OrderedDict(sorted(self.metric_history.items()))

    def get_metric_history(self) -> "OrderedDict[datetime, CollectedMetrics]":
        return self.metric_history

    def trim_metric_history(self, now: datetime, window: timedelta):
        """Drop samples that fell out of the metric window"""
        cutoff = now - window
        for ts in [ts for ts in self.metric_history if ts < cutoff]:
            del self.metric_history[ts]

    def is_metric_window_full(self, now: datetime, window: timedelta) -> bool:
        if not self.metric_history:
            return False
        return next(iter(self.metric_history)) <= now - window

    def clear_metric_history(self):
        self.metric_history.clear()

    # ---- scaling history ----

    def get_scaling_history(self, vertex: str) -> "OrderedDict[datetime, ScalingSummary]":
        return self.scaling_history.get(vertex, OrderedDict())

    def append_scaling(self, vertex: str, now: datetime, summary: ScalingSummary):
        history = self.scaling_history.setdefault(vertex, OrderedDict())
        history[now] = summary
        self.scaling_history[vertex] = OrderedDict(sorted(history.items()))

    def add_to_scaling_history(self, now: datetime, summaries: Dict[str, ScalingSummary], conf: AutoScalerConfig):
        for vertex, summary in summaries.items():
            self.append_scaling(vertex, now, summary)
        self.trim_scaling_history(now, conf.history_max_age, conf.history_max_count)

    def trim_scaling_history(self, now: datetime, max_age: timedelta, max_count: int):
        """Keep at most max_count decisions per vertex, none older than max_age"""
        cutoff = now - max_age
        for vertex in list(self.scaling_history):
            kept = [(ts, s) for ts, s in self.scaling_history[vertex].items() if ts >= cutoff]
            kept = kept[-max_count:] if max_count > 0 else []
            if kept:
                self.scaling_history[vertex] = OrderedDict(kept)
            else:
                del self.scaling_history[vertex]

    # ---- serialization ----

    def to_dict(self) -> Dict:
        return {
            'jobUpdateTs': self.job_update_ts.isoformat() if self.job_update_ts else None,
            'metricHistory': {
                ts.isoformat(): {vertex: m.to_dict() for vertex, m in sample.items()}
                for ts, sample in self.metric_history.items()
            },
            'scalingHistory': {
                vertex: {ts.isoformat(): s.to_dict() for ts, s in history.items()}
                for vertex, history in self.scaling_history.items()
            }
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AutoScalerInfo":
        info = cls()
        if data.get('jobUpdateTs'):
            info.job_update_ts = datetime.fromisoformat(data['jobUpdateTs'])

        metric_history = [
            (datetime.fromisoformat(ts), {v: CollectedVertexMetrics.from_dict(m) for v, m in sample.items()})
            for ts, sample in (data.get('metricHistory') or {}).items()
        ]
        info.metric_history = OrderedDict(sorted(metric_history, key=lambda item: item[0]))

        for vertex, history in (data.get('scalingHistory') or {}).items():
            entries = [(datetime.fromisoformat(ts), ScalingSummary.from_dict(s)) for ts, s in history.items()]
            info.scaling_history[vertex] = OrderedDict(sorted(entries, key=lambda item: item[0]))
        return info

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: Optional[str]) -> "AutoScalerInfo":
        """Parse stored state; empty or unreadable payloads mean no history"""
        if not payload:
            return cls()
        try:
            return cls.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable autoscaler history: {e}")
            return cls()


class AutoScalerInfoStore:
    """Key-value store of AutoScalerInfo keyed by resource identity"""

    def load(self, resource: JobResource) -> AutoScalerInfo:
        raise NotImplementedError

    def save(self, resource: JobResource, info: AutoScalerInfo):
        raise NotImplementedError

    def delete(self, resource: JobResource):
        raise NotImplementedError


class InMemoryInfoStore(AutoScalerInfoStore):
    """Process-local store; keeps serialized copies so passes never share objects"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def load(self, resource: JobResource) -> AutoScalerInfo:
        return AutoScalerInfo.from_json(self._data.get(resource.key))

    def save(self, resource: JobResource, info: AutoScalerInfo):
        self._data[resource.key] = info.to_json()

    def delete(self, resource: JobResource):
        self._data.pop(resource.key, None)

    def __contains__(self, resource: JobResource) -> bool:
        return resource.key in self._data


class ConfigMapInfoStore(AutoScalerInfoStore):
    """
    Stores each resource's history in a ConfigMap next to it.

    The ConfigMap carries an owner reference to the resource (when its uid is
    known) so Kubernetes garbage-collects it with the resource.
    """

    DATA_KEY = "info"

    def __init__(self, core_v1: client.CoreV1Api, name_prefix: str = "autoscaler-",
                 owner_api_version: str = "flink.apache.org/v1beta1",
                 owner_kind: str = "FlinkDeployment"):
        self.core_v1 = core_v1
        self.name_prefix = name_prefix
        self.owner_api_version = owner_api_version
        self.owner_kind = owner_kind

    def _name(self, resource: JobResource) -> str:
        return f"{self.name_prefix}{resource.name}"

    @retry_with_backoff()
    def load(self, resource: JobResource) -> AutoScalerInfo:
        try:
            configmap = self.core_v1.read_namespaced_config_map(self._name(resource), resource.namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{resource.key} - No autoscaler history stored yet")
                return AutoScalerInfo()
            raise
        return AutoScalerInfo.from_json((configmap.data or {}).get(self.DATA_KEY))

    @retry_with_backoff()
    def save(self, resource: JobResource, info: AutoScalerInfo):
        name = self._name(resource)
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=resource.namespace,
                labels={
                    'app.kubernetes.io/managed-by': 'stream-autoscaler',
                    'app.kubernetes.io/instance': resource.name
                },
                owner_references=self._owner_references(resource)
            ),
            data={self.DATA_KEY: info.to_json()}
        )
        try:
            self.core_v1.replace_namespaced_config_map(name, resource.namespace, body)
        except ApiException as e:
            if e.status != 404:
                raise
            self.core_v1.create_namespaced_config_map(resource.namespace, body)
            logger.info(f"{resource.key} - Created autoscaler history ConfigMap {name}")

    @retry_with_backoff()
    def delete(self, resource: JobResource):
        try:
            self.core_v1.delete_namespaced_config_map(self._name(resource), resource.namespace)
            logger.info(f"{resource.key} - Deleted autoscaler history")
        except ApiException as e:
            if e.status != 404:
                raise

    def _owner_references(self, resource: JobResource):
        if not resource.uid:
            return None
        return [client.V1OwnerReference(
            api_version=self.owner_api_version,
            kind=self.owner_kind,
            name=resource.name,
            uid=resource.uid
        )]
