"""Convergence logic for VirtualMachine resources."""

import logging
from typing import Any, Callable, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .action import Action
from .config import (
    REQUEUE_SECONDS,
    VM_CONTAINER_PORT,
    VM_SELECTOR_LABEL,
    VM_SERVICE_PORT,
)
from .errors import UnsupportedStateError
from .events import WARNING
from .models import (
    CurrentState,
    DesiredState,
    VirtualMachine,
    build_status_patch,
)
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


def selector_labels(vm: VirtualMachine) -> Dict[str, str]:
    """Labels tying the Service to the Pod of a VirtualMachine."""
    return {VM_SELECTOR_LABEL: vm.name}


def owner_reference(vm: VirtualMachine) -> client.V1OwnerReference:
    return client.V1OwnerReference(
        api_version=vm.api_version(),
        kind=vm.KIND,
        name=vm.name,
        uid=vm.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def build_pod(vm: VirtualMachine) -> client.V1Pod:
    """Pod running the VirtualMachine image; named after the VM."""
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=vm.name,
            namespace=vm.namespace,
            labels=selector_labels(vm),
            owner_references=[owner_reference(vm)],
        ),
        spec=client.V1PodSpec(
            containers=[
                client.V1Container(
                    name=vm.name,
                    image=vm.spec.image,
                    ports=[client.V1ContainerPort(container_port=VM_CONTAINER_PORT)],
                )
            ],
        ),
    )


def build_service(vm: VirtualMachine) -> client.V1Service:
    """Service selecting the VirtualMachine's pod; named after the VM."""
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=vm.name,
            namespace=vm.namespace,
            labels=selector_labels(vm),
            owner_references=[owner_reference(vm)],
        ),
        spec=client.V1ServiceSpec(
            selector=selector_labels(vm),
            ports=[client.V1ServicePort(port=VM_SERVICE_PORT, target_port=VM_CONTAINER_PORT)],
        ),
    )


def current_state_for(pod: client.V1Pod) -> CurrentState:
    """
    STARTED once the pod reports every container as started, else STARTING.

    A pod with no container statuses yet counts as starting.
    """
    statuses = (pod.status.container_statuses if pod.status else None) or []
    if statuses and all(s.started for s in statuses):
        return CurrentState.STARTED
    return CurrentState.STARTING


def is_terminating(child: Any) -> bool:
    """True once the API server has accepted a delete of child."""
    return bool(child.metadata and child.metadata.deletion_timestamp)


class VirtualMachineReconciler(Reconciler):
    """Drives the Pod and Service of a VirtualMachine toward spec.state."""

    kind = VirtualMachine

    # desired state -> convergence method; every DesiredState must be listed
    HANDLERS = {
        DesiredState.STARTED: "_converge_started",
        DesiredState.STOPPED: "_converge_stopped",
        DesiredState.HIBERNATED: "_converge_hibernated",
    }

    def apply(self, vm: VirtualMachine) -> Action:
        logger.info(f"Reconciling VirtualMachine {vm.name} in {vm.namespace} toward {vm.spec.state.value}")
        current = getattr(self, self.HANDLERS[vm.spec.state])(vm)

        self.ctx.resources.patch_status(
            vm.name, vm.namespace, build_status_patch(VirtualMachine, state=current)
        )
        logger.debug(f"VirtualMachine {vm.key} is {current.value}")
        return Action.requeue(REQUEUE_SECONDS)

    def cleanup(self, vm: VirtualMachine) -> Action:
        logger.info(f"Cleaning up VirtualMachine {vm.key}")
        self._delete_pod(vm)
        self._delete_service(vm)
        self.ctx.recorder.publish(
            vm,
            reason="DeleteRequested",
            note=f"Delete `{vm.name}`",
            action="Deleting",
        )
        return Action.await_change()

    def _converge_started(self, vm: VirtualMachine) -> CurrentState:
        self._ensure_service(vm)
        pod = self._ensure_pod(vm)
        return current_state_for(pod)

    def _converge_stopped(self, vm: VirtualMachine) -> CurrentState:
        stopping = False
        children = (
            (self.ctx.children.read_pod, self._delete_pod),
            (self.ctx.children.read_service, self._delete_service),
        )
        for read, delete in children:
            child = self._lookup(read, vm)
            if child is None:
                continue
            if is_terminating(child):
                # delete already accepted; wait for the 404
                logger.debug(f"{type(child).__name__} {vm.key} is still terminating")
                stopping = True
            elif delete(vm):
                stopping = True

        return CurrentState.STOPPING if stopping else CurrentState.STOPPED

    def _converge_hibernated(self, vm: VirtualMachine) -> CurrentState:
        # TODO: define how the pod is suspended and resumed before reporting HIBERNATING/HIBERNATED
        logger.warning(f"Hibernation of VirtualMachine {vm.key} is not supported yet")
        self.ctx.recorder.publish(
            vm,
            reason="HibernateUnsupported",
            note=f"Hibernation of `{vm.name}` is not implemented",
            action="Hibernating",
            type_=WARNING,
        )
        raise UnsupportedStateError(f"desired state {DesiredState.HIBERNATED.value} is not implemented")

    def _ensure_service(self, vm: VirtualMachine) -> client.V1Service:
        try:
            return self.ctx.children.read_service(vm.name, vm.namespace)
        except ApiException as e:
            if e.status != 404:
                raise

        logger.info(f"Creating Service {vm.key}")
        service = self.ctx.children.create_service(vm.namespace, build_service(vm))
        self.ctx.recorder.publish(vm, reason="ServiceCreated",
                                  note=f"Created service `{vm.name}`", action="Starting")
        return service

    def _ensure_pod(self, vm: VirtualMachine) -> client.V1Pod:
        try:
            return self.ctx.children.read_pod(vm.name, vm.namespace)
        except ApiException as e:
            if e.status != 404:
                raise

        logger.info(f"Creating Pod {vm.key} with image {vm.spec.image}")
        pod = self.ctx.children.create_pod(vm.namespace, build_pod(vm))
        self.ctx.recorder.publish(vm, reason="PodCreated",
                                  note=f"Created pod `{vm.name}`", action="Starting")
        return pod

    def _lookup(self, read: Callable, vm: VirtualMachine) -> Optional[Any]:
        """The child if it exists; a failed lookup counts as nothing to delete."""
        try:
            return read(vm.name, vm.namespace)
        except ApiException as e:
            if e.status != 404:
                logger.debug(f"Lookup for {vm.key} failed, treating as absent: {e.status} {e.reason}")
            return None

    def _delete_pod(self, vm: VirtualMachine) -> bool:
        if not self._delete(self.ctx.children.delete_pod, vm, "Pod"):
            return False
        self.ctx.recorder.publish(vm, reason="PodDeleted",
                                  note=f"Deleted pod `{vm.name}`", action="Stopping")
        return True

    def _delete_service(self, vm: VirtualMachine) -> bool:
        if not self._delete(self.ctx.children.delete_service, vm, "Service"):
            return False
        self.ctx.recorder.publish(vm, reason="ServiceDeleted",
                                  note=f"Deleted service `{vm.name}`", action="Stopping")
        return True

    def _delete(self, delete: Callable, vm: VirtualMachine, what: str) -> bool:
        """Delete a child; already gone is not an error. Returns True if deleted."""
        try:
            delete(vm.name, vm.namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{what} {vm.key} already deleted")
                return False
            raise
        logger.info(f"Deleted {what} {vm.key}")
        return True


_unhandled = set(DesiredState) - set(VirtualMachineReconciler.HANDLERS)
if _unhandled:
    raise TypeError(f"No convergence handler for desired state(s) {sorted(s.value for s in _unhandled)}")
