"""
Scaling Metrics
Metric identifiers, evaluated metric values and raw per-vertex samples
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional


class ScalingMetric(Enum):
    """Per-vertex metrics the scaling decision works with"""
    PARALLELISM = "parallelism"
    MAX_PARALLELISM = "max_parallelism"
    # Busy time ratio in [0, 1]
    LOAD = "load"
    # Records/s the vertex should be able to process
    TARGET_DATA_RATE = "target_data_rate"
    # Extra records/s needed to drain the backlog within the catch-up duration
    CATCH_UP_DATA_RATE = "catch_up_data_rate"
    # Records/s the vertex could process at 100% busy time
    TRUE_PROCESSING_RATE = "true_processing_rate"
    CURRENT_PROCESSING_RATE = "current_processing_rate"
    LAG = "lag"
    # Lower processing-rate bound; below it the vertex needs more capacity
    SCALE_UP_RATE_THRESHOLD = "scale_up_rate_threshold"
    # Upper processing-rate bound; above it the vertex is over-provisioned
    SCALE_DOWN_RATE_THRESHOLD = "scale_down_rate_threshold"


@dataclass(frozen=True)
class EvaluatedScalingMetric:
    """Average over the metric window and latest value of one metric"""
    average: float
    current: float

    @classmethod
    def of(cls, value: float) -> "EvaluatedScalingMetric":
        return cls(average=value, current=value)

    def to_dict(self) -> Dict[str, float]:
        return {'average': self.average, 'current': self.current}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluatedScalingMetric":
        return cls(average=float(data['average']), current=float(data['current']))


@dataclass(frozen=True)
class CollectedVertexMetrics:
    """Raw metrics of one vertex at one observation instant"""
    parallelism: int
    data_rate: float                   # records/s into the vertex
    busy_time_ms_per_sec: float        # 0..1000
    backlog: float = 0.0               # pending records, sources only
    max_parallelism: Optional[int] = None

    @property
    def load(self) -> float:
        return min(max(self.busy_time_ms_per_sec / 1000.0, 0.0), 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectedVertexMetrics":
        return cls(
            parallelism=int(data['parallelism']),
            data_rate=float(data['data_rate']),
            busy_time_ms_per_sec=float(data['busy_time_ms_per_sec']),
            backlog=float(data.get('backlog', 0.0)),
            max_parallelism=data.get('max_parallelism')
        )


# vertex id -> metric -> value
VertexMetrics = Dict[ScalingMetric, EvaluatedScalingMetric]
EvaluatedMetrics = Dict[str, VertexMetrics]
CollectedMetrics = Dict[str, CollectedVertexMetrics]


def metrics_to_dict(metrics: VertexMetrics) -> Dict[str, Dict[str, float]]:
    return {metric.value: value.to_dict() for metric, value in metrics.items()}


def metrics_from_dict(data: Dict[str, Dict[str, Any]]) -> VertexMetrics:
    return {ScalingMetric(name): EvaluatedScalingMetric.from_dict(value) for name, value in data.items()}

