"""
Autoscaler Configuration
Typed autoscaler options plus operator settings loaded from environment and ConfigMap
"""

import os
import logging
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from kubernetes import client

from stream_autoscaler.config_validator import ConfigValidator

logger = logging.getLogger(__name__)

AUTOSCALER_PREFIX = "kubernetes.operator.job.autoscaler."

# field name -> option key (without prefix)
OPTION_KEYS = {
    'enabled': 'enabled',
    'scaling_enabled': 'scaling.enabled',
    'stabilization_interval': 'stabilization.interval',
    'metrics_window': 'metrics.window',
    'target_utilization': 'target.utilization',
    'target_utilization_boundary': 'target.utilization.boundary',
    'max_scale_down_factor': 'scale-down.max-factor',
    'catch_up_duration': 'catch-up.duration',
    'restart_time': 'restart.time',
    'scaling_effectiveness_detection_enabled': 'scaling.effectiveness.detection.enabled',
    'scaling_effectiveness_threshold': 'scaling.effectiveness.threshold',
    'scaling_effectiveness_cooldown': 'scaling.effectiveness.cooldown',
    'vertex_min_parallelism': 'vertex.min-parallelism',
    'vertex_max_parallelism': 'vertex.max-parallelism',
    'history_max_age': 'history.max-age',
    'history_max_count': 'history.max-count',
}


@dataclass(frozen=True)
class AutoScalerConfig:
    """
    Autoscaler tunables for one resource.

    Decision logic only reads these named fields; string keys are confined to
    from_mapping().
    """
    enabled: bool = False
    # False = compute and report recommendations without applying them
    scaling_enabled: bool = True
    stabilization_interval: timedelta = timedelta(minutes=5)
    metrics_window: timedelta = timedelta(minutes=5)
    target_utilization: float = 0.7
    target_utilization_boundary: float = 0.1
    # 1.0 = no limit, 0.6 = at most 60% reduction per cycle
    max_scale_down_factor: float = 0.6
    catch_up_duration: timedelta = timedelta(minutes=10)
    restart_time: timedelta = timedelta(minutes=5)
    scaling_effectiveness_detection_enabled: bool = False
    scaling_effectiveness_threshold: float = 0.1
    scaling_effectiveness_cooldown: timedelta = timedelta(minutes=30)
    vertex_min_parallelism: int = 1
    vertex_max_parallelism: int = 200
    history_max_age: timedelta = timedelta(hours=24)
    history_max_count: int = 5

    def __post_init__(self):
        ConfigValidator.validate_fraction(self.target_utilization, 'target.utilization', allow_zero=False)
        ConfigValidator.validate_fraction(self.target_utilization_boundary, 'target.utilization.boundary', allow_one=False)
        ConfigValidator.validate_fraction(self.max_scale_down_factor, 'scale-down.max-factor')
        ConfigValidator.validate_fraction(self.scaling_effectiveness_threshold, 'scaling.effectiveness.threshold')
        ConfigValidator.validate_positive_int(self.vertex_min_parallelism, 'vertex.min-parallelism')
        ConfigValidator.validate_positive_int(self.vertex_max_parallelism, 'vertex.max-parallelism')
        ConfigValidator.validate_positive_int(self.history_max_count, 'history.max-count')
        if self.vertex_min_parallelism > self.vertex_max_parallelism:
            raise ValueError(
                f"vertex.min-parallelism ({self.vertex_min_parallelism}) must not exceed "
                f"vertex.max-parallelism ({self.vertex_max_parallelism})"
            )
        for name in ('stabilization_interval', 'metrics_window', 'catch_up_duration', 'restart_time',
                     'scaling_effectiveness_cooldown', 'history_max_age'):
            if getattr(self, name) < timedelta(0):
                raise ValueError(f"{OPTION_KEYS[name]} must be non-negative")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any], base: Optional["AutoScalerConfig"] = None) -> "AutoScalerConfig":
        """
        Build a config from prefixed option keys, falling back to base.

        Unknown keys are ignored so a whole job configuration can be passed in.
        """
        base = base or cls()
        updates: Dict[str, Any] = {}

        for f in fields(cls):
            key = AUTOSCALER_PREFIX + OPTION_KEYS[f.name]
            if key not in options:
                continue
            raw = options[key]
            if f.type in (bool, 'bool'):
                updates[f.name] = ConfigValidator.parse_bool(raw, key)
            elif f.type in (timedelta, 'timedelta'):
                updates[f.name] = ConfigValidator.parse_duration(raw, key)
            elif f.type in (int, 'int'):
                try:
                    updates[f.name] = int(raw)
                except (TypeError, ValueError) as e:
                    raise ValueError(f"Invalid {key}: {raw}. Must be an integer") from e
            else:
                try:
                    updates[f.name] = float(raw)
                except (TypeError, ValueError) as e:
                    raise ValueError(f"Invalid {key}: {raw}. Must be a number") from e

        return replace(base, **updates) if updates else base


@dataclass
class OperatorSettings:
    """Operator process settings"""
    check_interval: int
    watch_namespace: str
    prometheus_url: str
    flink_rest_url_template: str
    store: str
    log_level: str
    log_format: str
    metrics_port: int
    dry_run: bool
    crd_group: str
    crd_version: str
    crd_plural: str
    # operator-wide autoscaler defaults, prefixed option keys
    autoscaler_defaults: Dict[str, str]


class ConfigLoader:
    """Load operator settings from environment variables and an optional ConfigMap"""

    def __init__(self, namespace: str = "autoscaler-system",
                 configmap_name: str = "stream-autoscaler-config",
                 core_v1: Optional[client.CoreV1Api] = None):
        self.namespace = namespace
        self.configmap_name = configmap_name
        self.core_v1 = core_v1
        self.settings: Optional[OperatorSettings] = None

    def load(self) -> OperatorSettings:
        """Load settings; ConfigMap entries override environment values"""
        values = self._load_from_env()

        if self.core_v1 is not None:
            configmap_values = self._load_from_configmap()
            if configmap_values:
                values.update(configmap_values)
                logger.info(f"Configuration merged from ConfigMap {self.namespace}/{self.configmap_name}")

        self.settings = self._build(values)
        logger.info(
            f"Configuration loaded: check_interval={self.settings.check_interval}s, "
            f"namespace={self.settings.watch_namespace or '<all>'}, store={self.settings.store}, "
            f"dry_run={self.settings.dry_run}, "
            f"{len(self.settings.autoscaler_defaults)} autoscaler defaults"
        )
        return self.settings

    def _load_from_env(self) -> Dict[str, str]:
        values = {
            'CHECK_INTERVAL': os.getenv('CHECK_INTERVAL', '15'),
            'WATCH_NAMESPACE': os.getenv('WATCH_NAMESPACE', ''),
            'PROMETHEUS_URL': os.getenv('PROMETHEUS_URL', 'http://prometheus-server.monitoring:9090'),
            'FLINK_REST_URL_TEMPLATE': os.getenv(
                'FLINK_REST_URL_TEMPLATE', 'http://{name}-rest.{namespace}:8081'
            ),
            'HISTORY_STORE': os.getenv('HISTORY_STORE', 'configmap'),
            'LOG_LEVEL': os.getenv('LOG_LEVEL', 'INFO'),
            'LOG_FORMAT': os.getenv('LOG_FORMAT', 'json'),
            'METRICS_PORT': os.getenv('METRICS_PORT', '8000'),
            'DRY_RUN': os.getenv('DRY_RUN', 'false'),
            'CRD_GROUP': os.getenv('CRD_GROUP', 'flink.apache.org'),
            'CRD_VERSION': os.getenv('CRD_VERSION', 'v1beta1'),
            'CRD_PLURAL': os.getenv('CRD_PLURAL', 'flinkdeployments'),
        }

        # Autoscaler defaults: AUTOSCALER_TARGET_UTILIZATION -> ...autoscaler.target.utilization
        for field_name, option in OPTION_KEYS.items():
            env_value = os.getenv(f"AUTOSCALER_{field_name.upper()}")
            if env_value is not None:
                values[AUTOSCALER_PREFIX + option] = env_value

        return values

    def _load_from_configmap(self) -> Optional[Dict[str, str]]:
        try:
            configmap = self.core_v1.read_namespaced_config_map(
                name=self.configmap_name,
                namespace=self.namespace
            )
        except client.exceptions.ApiException as e:
            if e.status == 404:
                logger.debug(f"ConfigMap {self.configmap_name} not found")
            else:
                logger.error(f"Error reading ConfigMap: {e}")
            return None

        return dict(configmap.data or {})

    def _build(self, values: Dict[str, str]) -> OperatorSettings:
        autoscaler_defaults = {k: v for k, v in values.items() if k.startswith(AUTOSCALER_PREFIX)}
        # Fail fast on bad operator-wide defaults
        AutoScalerConfig.from_mapping(autoscaler_defaults)

        store = values['HISTORY_STORE'].lower()
        if store not in ('configmap', 'memory'):
            raise ValueError(f"HISTORY_STORE must be 'configmap' or 'memory', got {store}")

        return OperatorSettings(
            check_interval=ConfigValidator.validate_check_interval(values['CHECK_INTERVAL']),
            watch_namespace=values['WATCH_NAMESPACE'],
            prometheus_url=ConfigValidator.validate_url(values['PROMETHEUS_URL'], 'PROMETHEUS_URL'),
            flink_rest_url_template=values['FLINK_REST_URL_TEMPLATE'],
            store=store,
            log_level=values['LOG_LEVEL'],
            log_format=values['LOG_FORMAT'],
            metrics_port=ConfigValidator.validate_port(values['METRICS_PORT'], 'METRICS_PORT'),
            dry_run=ConfigValidator.parse_bool(values['DRY_RUN'], 'DRY_RUN'),
            crd_group=values['CRD_GROUP'],
            crd_version=values['CRD_VERSION'],
            crd_plural=values['CRD_PLURAL'],
            autoscaler_defaults=autoscaler_defaults
        )
