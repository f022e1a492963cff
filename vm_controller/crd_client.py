"""Clients for the managed custom resources and their child Pods/Services."""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .config import FIELD_MANAGER, WATCH_TIMEOUT_SECONDS
from .errors import KubeApiError
from .models import ManagedResource

logger = logging.getLogger(__name__)


class CustomResourceClient:
    """Client for one kind of managed custom resource."""

    def __init__(self, kind: Type[ManagedResource], custom_api: Optional[client.CustomObjectsApi] = None):
        """
        Initialize the CRD client.

        Args:
            kind: ManagedResource subclass describing group/version/plural
            custom_api: Optional preconfigured CustomObjectsApi
        """
        self.kind = kind
        self.custom_api = custom_api or client.CustomObjectsApi()

    def _coordinates(self) -> Dict[str, str]:
        return {
            "group": self.kind.GROUP,
            "version": self.kind.VERSION,
            "plural": self.kind.PLURAL,
        }

    def _list_raw(self, namespace: str = "", limit: Optional[int] = None) -> Dict[str, Any]:
        kwargs = dict(self._coordinates())
        if limit is not None:
            kwargs["limit"] = limit
        if namespace:
            return self.custom_api.list_namespaced_custom_object(namespace=namespace, **kwargs)
        return self.custom_api.list_cluster_custom_object(**kwargs)

    def list(self, namespace: str = "", limit: Optional[int] = None) -> List[ManagedResource]:
        """
        List objects of this kind.

        Args:
            namespace: Namespace to list from ("" for all namespaces)
            limit: Optional page size

        Returns:
            List of parsed resources; items that fail to parse are logged and skipped

        Raises:
            KubeApiError: if the API call fails
        """
        try:
            response = self._list_raw(namespace, limit)
        except ApiException as e:
            raise KubeApiError.from_api_exception(f"list {self.kind.PLURAL}", e) from e

        objects = []
        for item in response.get("items", []):
            try:
                objects.append(self.kind.from_crd(item))
            except (ValueError, TypeError) as e:
                metadata = item.get("metadata", {})
                logger.error(
                    f"Skipping malformed {self.kind.KIND} "
                    f"{metadata.get('namespace')}/{metadata.get('name')}: {e}"
                )
        return objects

    def probe(self) -> None:
        """
        Verify the CRD is served by listing at most one object.

        Raises:
            KubeApiError: if the resource type cannot be queried
        """
        try:
            self._list_raw(limit=1)
        except ApiException as e:
            raise KubeApiError.from_api_exception(f"probe {self.kind.PLURAL}", e) from e

    def get(self, name: str, namespace: str) -> ManagedResource:
        """
        Get the live object.

        Raises:
            KubeApiError: with status 404 if the object no longer exists
        """
        try:
            obj = self.custom_api.get_namespaced_custom_object(
                namespace=namespace, name=name, **self._coordinates()
            )
        except ApiException as e:
            raise KubeApiError.from_api_exception(
                f"get {self.kind.KIND} {namespace}/{name}", e
            ) from e
        return self.kind.from_crd(obj)

    def patch_status(self, name: str, namespace: str, patch: Dict[str, Any]) -> ManagedResource:
        """
        Merge-patch the status subresource.

        Only the fields present in patch["status"] are written, so status
        fields owned by other writers survive. A server-side apply with
        force would also work here, but it takes ownership of every field in
        the applied body and needs apiVersion, kind and name in the patch.
        """
        try:
            obj = self.custom_api.patch_namespaced_custom_object_status(
                namespace=namespace,
                name=name,
                body=patch,
                field_manager=FIELD_MANAGER,
                **self._coordinates()
            )
        except ApiException as e:
            raise KubeApiError.from_api_exception(
                f"patch status of {self.kind.KIND} {namespace}/{name}", e
            ) from e
        logger.debug(f"Patched status of {self.kind.KIND} {namespace}/{name}: {patch['status']}")
        return self.kind.from_crd(obj)

    def set_finalizers(self, obj: ManagedResource, finalizers: List[str]) -> ManagedResource:
        """
        Replace the finalizer list of obj.

        The observed resourceVersion is sent along, so the write is rejected
        with a conflict if anyone changed the object in the meantime.
        """
        body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": obj.metadata.resource_version,
            }
        }
        try:
            patched = self.custom_api.patch_namespaced_custom_object(
                namespace=obj.namespace,
                name=obj.name,
                body=body,
                field_manager=FIELD_MANAGER,
                **self._coordinates()
            )
        except ApiException as e:
            raise KubeApiError.from_api_exception(
                f"patch finalizers of {self.kind.KIND} {obj.key}", e
            ) from e
        return self.kind.from_crd(patched)

    def watch(self, namespace: str = "", timeout: int = WATCH_TIMEOUT_SECONDS,
              watcher: Optional[watch.Watch] = None) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """
        Create a watch stream for objects of this kind.

        Args:
            namespace: Namespace to watch ("" for all namespaces)
            timeout: Watch timeout in seconds
            watcher: Watch instance, so the caller can stop the stream

        Yields:
            (event type, raw object) tuples
        """
        w = watcher or watch.Watch()
        if namespace:
            stream = w.stream(
                self.custom_api.list_namespaced_custom_object,
                namespace=namespace,
                timeout_seconds=timeout,
                **self._coordinates()
            )
        else:
            stream = w.stream(
                self.custom_api.list_cluster_custom_object,
                timeout_seconds=timeout,
                **self._coordinates()
            )

        for event in stream:
            yield event["type"], event["object"]


class ChildResourceClient:
    """Namespaced access to the Pods and Services owned by managed resources."""

    def __init__(self, core_api: Optional[client.CoreV1Api] = None):
        self.v1 = core_api or client.CoreV1Api()

    def read_pod(self, name: str, namespace: str) -> client.V1Pod:
        return self.v1.read_namespaced_pod(name=name, namespace=namespace)

    def create_pod(self, namespace: str, pod: client.V1Pod) -> client.V1Pod:
        return self.v1.create_namespaced_pod(namespace=namespace, body=pod)

    def delete_pod(self, name: str, namespace: str) -> None:
        self.v1.delete_namespaced_pod(name=name, namespace=namespace)

    def read_service(self, name: str, namespace: str) -> client.V1Service:
        return self.v1.read_namespaced_service(name=name, namespace=namespace)

    def create_service(self, namespace: str, service: client.V1Service) -> client.V1Service:
        return self.v1.create_namespaced_service(namespace=namespace, body=service)

    def delete_service(self, name: str, namespace: str) -> None:
        self.v1.delete_namespaced_service(name=name, namespace=namespace)
