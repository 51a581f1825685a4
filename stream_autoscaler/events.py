"""
Event Recorder
Emits Kubernetes events for autoscaler decisions and errors, optionally mirrored to webhooks
"""

import logging
import zlib
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

import requests
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from stream_autoscaler.clock import Clock, SystemClock
from stream_autoscaler.resource import JobResource

logger = logging.getLogger(__name__)


class EventType(Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


class EventReason(Enum):
    MISSING = "Missing"
    SCALING_REPORT = "ScalingReport"
    INEFFECTIVE_SCALING = "IneffectiveScaling"
    JOB_STATUS_CHANGED = "JobStatusChanged"


class EventComponent(Enum):
    JOB = "Job"
    OPERATOR = "Operator"


@dataclass
class AutoscalerEvent:
    """An event raised against a managed resource"""
    resource_key: str
    type: EventType
    reason: EventReason
    component: EventComponent
    message: str
    timestamp: datetime


class EventRecorder:
    """
    Records events against resources.

    Events with the same component, reason and message are folded into one
    Kubernetes Event whose count is bumped, like kubectl shows repeated events.
    """

    def __init__(
        self,
        core_v1: Optional[client.CoreV1Api] = None,
        clock: Optional[Clock] = None,
        webhooks: Optional[Dict[str, str]] = None,
        owner_api_version: str = "flink.apache.org/v1beta1",
        owner_kind: str = "FlinkDeployment",
        history_size: int = 100
    ):
        self.core_v1 = core_v1
        self.clock = clock or SystemClock()
        self.webhooks = webhooks or {}
        self.owner_api_version = owner_api_version
        self.owner_kind = owner_kind
        self.listeners: List[Callable[[JobResource, AutoscalerEvent], None]] = []
        self.recent_events: Deque[AutoscalerEvent] = deque(maxlen=history_size)

    def add_listener(self, listener: Callable[[JobResource, AutoscalerEvent], None]):
        self.listeners.append(listener)

    def trigger_event(self, resource: JobResource, event_type: EventType, reason: EventReason,
                      component: EventComponent, message: str) -> AutoscalerEvent:
        event = AutoscalerEvent(
            resource_key=resource.key,
            type=event_type,
            reason=reason,
            component=component,
            message=message,
            timestamp=self.clock.now()
        )
        self.recent_events.append(event)

        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(f"{resource.key} - [{event_type.value}] {component.value}/{reason.value}: {message}")

        for listener in self.listeners:
            try:
                listener(resource, event)
            except Exception as e:
                logger.error(f"Event listener failed: {e}", exc_info=True)

        if self.core_v1 is not None:
            try:
                self._create_or_update_event(resource, event)
            except ApiException as e:
                logger.error(f"{resource.key} - Failed to record Kubernetes event: {e}")

        if event_type == EventType.WARNING:
            self._send_webhooks(event)

        return event

    def _event_name(self, resource: JobResource, event: AutoscalerEvent) -> str:
        digest = zlib.crc32(event.message.encode('utf-8')) & 0xffffffff
        return f"{resource.name}.{event.component.value.lower()}.{event.reason.value.lower()}.{digest:08x}"

    def _create_or_update_event(self, resource: JobResource, event: AutoscalerEvent):
        name = self._event_name(resource, event)

        try:
            existing = self.core_v1.read_namespaced_event(name, resource.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            existing = None

        if existing is not None:
            self.core_v1.patch_namespaced_event(name, resource.namespace, {
                'count': (existing.count or 1) + 1,
                'lastTimestamp': event.timestamp.isoformat()
            })
            return

        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(name=name, namespace=resource.namespace),
            involved_object=client.V1ObjectReference(
                api_version=self.owner_api_version,
                kind=self.owner_kind,
                name=resource.name,
                namespace=resource.namespace,
                uid=resource.uid
            ),
            reason=event.reason.value,
            message=event.message,
            type=event.type.value,
            count=1,
            first_timestamp=event.timestamp,
            last_timestamp=event.timestamp,
            source=client.V1EventSource(component=event.component.value)
        )
        self.core_v1.create_namespaced_event(resource.namespace, body)

    def _send_webhooks(self, event: AutoscalerEvent):
        for channel, webhook_url in self.webhooks.items():
            try:
                if channel == "slack":
                    payload = {
                        "attachments": [{
                            "color": "#ff9900",
                            "title": f"{event.resource_key}: {event.reason.value}",
                            "text": event.message,
                            "footer": "Stream Autoscaler",
                            "ts": int(event.timestamp.timestamp())
                        }]
                    }
                else:
                    payload = {
                        "resource": event.resource_key,
                        "type": event.type.value,
                        "reason": event.reason.value,
                        "component": event.component.value,
                        "message": event.message,
                        "timestamp": event.timestamp.isoformat()
                    }
                requests.post(webhook_url, json=payload, timeout=5)
            except requests.RequestException as e:
                logger.error(f"Failed to send event to {channel}: {e}")
