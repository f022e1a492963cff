"""In-memory stand-ins for the Kubernetes API used across the test suite."""

import copy
import time
import threading
from datetime import datetime, timezone

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from prometheus_client import CollectorRegistry

from vm_controller.errors import ConflictError, KubeApiError
from vm_controller.metrics import Diagnostics, Metrics
from vm_controller.models import Pokemon, VirtualMachine, make_key
from vm_controller.reconciler import Context


def not_found():
    return ApiException(status=404, reason="Not Found")


def reconcile_count(metrics, kind):
    value = metrics.registry.get_sample_value(
        f"{metrics.prefix}_reconciliations_total", {"kind": kind}
    )
    return value or 0.0


def failure_count(metrics, obj):
    """Total failures recorded for obj across all error kinds."""
    total = 0.0
    for metric in metrics.failures.collect():
        for sample in metric.samples:
            if (sample.name.endswith("_total")
                    and sample.labels.get("instance") == obj.key
                    and sample.labels.get("kind") == obj.KIND):
                total += sample.value
    return total


class FakeResources:
    """Custom resource client backed by a dict of raw API objects."""

    def __init__(self, kind):
        self.kind = kind
        self.objects = {}
        self.status_patches = []
        self.finalizer_patches = []
        self.events = []
        self.fail_get = {}
        self.fail_status = {}
        self.probe_error = None
        self._lock = threading.Lock()
        self._rv = 0

    def _next_rv(self):
        self._rv += 1
        return str(self._rv)

    def add(self, raw):
        with self._lock:
            raw = copy.deepcopy(raw)
            raw["metadata"]["resourceVersion"] = self._next_rv()
            key = make_key(raw["metadata"]["namespace"], raw["metadata"]["name"])
            self.objects[key] = raw
            return self.kind.from_crd(raw)

    def raw(self, name, namespace="default"):
        return self.objects[make_key(namespace, name)]

    def get(self, name, namespace):
        key = make_key(namespace, name)
        with self._lock:
            if key in self.fail_get:
                raise self.fail_get[key]
            if key not in self.objects:
                raise KubeApiError(f"get {key} failed: 404 Not Found", status=404)
            return self.kind.from_crd(copy.deepcopy(self.objects[key]))

    def list(self, namespace="", limit=None):
        with self._lock:
            items = [
                self.kind.from_crd(copy.deepcopy(raw))
                for raw in self.objects.values()
                if not namespace or raw["metadata"]["namespace"] == namespace
            ]
        return items[:limit] if limit else items

    def probe(self):
        if self.probe_error is not None:
            raise self.probe_error

    def patch_status(self, name, namespace, patch):
        key = make_key(namespace, name)
        with self._lock:
            if key in self.fail_status:
                raise self.fail_status[key]
            raw = self.objects[key]
            # merge patch semantics: only the supplied keys are replaced
            raw.setdefault("status", {}).update(copy.deepcopy(patch["status"]))
            raw["metadata"]["resourceVersion"] = self._next_rv()
            self.status_patches.append((key, copy.deepcopy(patch)))
            return self.kind.from_crd(copy.deepcopy(raw))

    def set_finalizers(self, obj, finalizers):
        with self._lock:
            raw = self.objects.get(obj.key)
            if raw is None:
                raise KubeApiError(f"patch {obj.key} failed: 404 Not Found", status=404)
            if raw["metadata"]["resourceVersion"] != obj.metadata.resource_version:
                raise ConflictError(f"patch {obj.key} failed: 409 Conflict", status=409)
            raw["metadata"]["finalizers"] = list(finalizers)
            raw["metadata"]["resourceVersion"] = self._next_rv()
            self.finalizer_patches.append((obj.key, list(finalizers)))
            # an object being deleted disappears once its last finalizer goes
            if raw["metadata"].get("deletionTimestamp") and not finalizers:
                del self.objects[obj.key]
            return self.kind.from_crd(copy.deepcopy(raw))

    def watch(self, namespace="", timeout=None, watcher=None):
        for event in list(self.events):
            yield event
        # a real watch stays open until its server-side timeout
        time.sleep(0.05)


class FakeChildren:
    """Pod/Service client that records every call."""

    def __init__(self):
        self.pods = {}
        self.services = {}
        self.calls = []
        self.failures = {}
        # pods stay behind with a deletionTimestamp until finish_termination
        self.graceful_delete = False

    def _maybe_fail(self, method, name, namespace):
        self.calls.append((method, make_key(namespace, name)))
        error = self.failures.get(method)
        if error is not None:
            raise error

    def count(self, method):
        return sum(1 for m, _ in self.calls if m == method)

    def read_pod(self, name, namespace):
        self._maybe_fail("read_pod", name, namespace)
        try:
            return self.pods[make_key(namespace, name)]
        except KeyError:
            raise not_found()

    def create_pod(self, namespace, pod):
        self._maybe_fail("create_pod", pod.metadata.name, namespace)
        self.pods[make_key(namespace, pod.metadata.name)] = pod
        return pod

    def delete_pod(self, name, namespace):
        self._maybe_fail("delete_pod", name, namespace)
        key = make_key(namespace, name)
        if self.graceful_delete and key in self.pods:
            self.pods[key].metadata.deletion_timestamp = datetime.now(timezone.utc)
            return
        if self.pods.pop(key, None) is None:
            raise not_found()

    def read_service(self, name, namespace):
        self._maybe_fail("read_service", name, namespace)
        try:
            return self.services[make_key(namespace, name)]
        except KeyError:
            raise not_found()

    def create_service(self, namespace, service):
        self._maybe_fail("create_service", service.metadata.name, namespace)
        self.services[make_key(namespace, service.metadata.name)] = service
        return service

    def delete_service(self, name, namespace):
        self._maybe_fail("delete_service", name, namespace)
        if self.services.pop(make_key(namespace, name), None) is None:
            raise not_found()

    def finish_termination(self, name, namespace="default"):
        self.pods.pop(make_key(namespace, name))

    def mark_started(self, name, namespace="default", started=True):
        pod = self.pods[make_key(namespace, name)]
        pod.status = client.V1PodStatus(
            container_statuses=[
                client.V1ContainerStatus(
                    name=c.name,
                    image=c.image,
                    image_id="",
                    ready=started,
                    restart_count=0,
                    started=started,
                )
                for c in pod.spec.containers
            ]
        )


class FakeRecorder:
    def __init__(self):
        self.events = []

    def publish(self, obj, reason, note, action, type_="Normal"):
        self.events.append((obj.key, reason, type_))
        return True

    def reasons(self):
        return [reason for _, reason, _ in self.events]


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return Metrics(registry)


@pytest.fixture
def children():
    return FakeChildren()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def vm_resources():
    return FakeResources(VirtualMachine)


@pytest.fixture
def pokemon_resources():
    return FakeResources(Pokemon)


@pytest.fixture
def vm_ctx(vm_resources, children, recorder, metrics):
    return Context(
        resources=vm_resources,
        children=children,
        recorder=recorder,
        metrics=metrics,
        diagnostics=Diagnostics(),
    )


@pytest.fixture
def pokemon_ctx(pokemon_resources, children, recorder, metrics):
    return Context(
        resources=pokemon_resources,
        children=children,
        recorder=recorder,
        metrics=metrics,
        diagnostics=Diagnostics(),
    )


@pytest.fixture
def make_vm():
    def _make(name="vm1", namespace="default", state="STARTED", image="nginx:1.25",
              finalizers=None, deleting=False, status=None, uid="uid-1"):
        raw = {
            "apiVersion": "codesandbox.io/v1alpha1",
            "kind": "VirtualMachine",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": uid,
                "finalizers": list(finalizers or []),
            },
            "spec": {"image": image, "state": state},
        }
        if deleting:
            raw["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        if status is not None:
            raw["status"] = status
        return raw
    return _make


@pytest.fixture
def make_pokemon():
    def _make(name="pikachu", namespace="default", health=10, finalizers=None,
              deleting=False, status=None):
        raw = {
            "apiVersion": "pokemon.rs/v1",
            "kind": "Pokemon",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "finalizers": list(finalizers or []),
            },
            "spec": {"name": name, "health": health},
        }
        if deleting:
            raw["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        if status is not None:
            raw["status"] = status
        return raw
    return _make
