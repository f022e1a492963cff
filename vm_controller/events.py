"""Best-effort Kubernetes events attached to managed resources."""

import logging
from datetime import datetime, timezone
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .config import REPORTER
from .models import ManagedResource

logger = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


class EventRecorder:
    """Publishes core/v1 Events that reference a managed resource."""

    def __init__(self, reporter: str = REPORTER, core_api: Optional[client.CoreV1Api] = None):
        self.reporter = reporter
        self.v1 = core_api or client.CoreV1Api()

    def publish(self, obj: ManagedResource, reason: str, note: str,
                action: str, type_: str = NORMAL) -> bool:
        """
        Publish an event for obj.

        Failures are logged and swallowed; a lost event never fails a
        reconcile.

        Returns:
            True if the event was accepted by the API server
        """
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{obj.name}-", namespace=obj.namespace),
            involved_object=client.V1ObjectReference(
                api_version=obj.api_version(),
                kind=obj.KIND,
                name=obj.name,
                namespace=obj.namespace,
                uid=obj.metadata.uid or None,
            ),
            type=type_,
            reason=reason,
            message=note,
            action=action,
            reporting_component=self.reporter,
            reporting_instance=self.reporter,
            source=client.V1EventSource(component=self.reporter),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.v1.create_namespaced_event(namespace=obj.namespace, body=event)
        except ApiException as e:
            logger.warning(f"Failed to publish event {reason} for {obj.KIND} {obj.key}: {e.status} {e.reason}")
            return False
        except Exception as e:
            logger.warning(f"Unexpected error publishing event {reason} for {obj.KIND} {obj.key}: {e}")
            return False
        logger.debug(f"Published {type_} event {reason} for {obj.KIND} {obj.key}")
        return True
