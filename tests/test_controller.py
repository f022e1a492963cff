import threading
import time

import pytest
from kubernetes.client.rest import ApiException

from vm_controller.config import ERROR_REQUEUE_SECONDS
from vm_controller.controller import Controller
from vm_controller.errors import CrdNotInstalled, KubeApiError
from vm_controller.virtualmachine import VirtualMachineReconciler

from conftest import failure_count


@pytest.fixture
def controller(vm_ctx):
    return Controller(VirtualMachineReconciler(vm_ctx), workers=2)


def drain(controller):
    while controller.process_next(timeout=0) and len(controller.queue):
        pass


def test_check_installed_fails_fast(controller, vm_resources):
    vm_resources.probe_error = KubeApiError("probe virtualmachines failed: 404 Not Found", status=404)

    with pytest.raises(CrdNotInstalled):
        controller.check_installed()


def test_check_installed_passes(controller):
    controller.check_installed()


def test_events_update_store_and_queue(controller, make_vm):
    controller.handle_event("ADDED", make_vm(name="a"))
    controller.handle_event("MODIFIED", make_vm(name="a"))
    controller.handle_event("ADDED", make_vm(name="b"))

    assert len(controller.queue) == 2
    assert controller.snapshot("default/a").name == "a"

    controller.handle_event("DELETED", make_vm(name="a"))
    assert controller.snapshot("default/a") is None


def test_malformed_and_bookmark_events_are_skipped(controller, make_vm):
    controller.handle_event("BOOKMARK", {"metadata": {"resourceVersion": "5"}})
    controller.handle_event("ADDED", make_vm(state="EXPLODED"))

    assert len(controller.queue) == 0


def test_resync_enqueues_existing_objects(controller, vm_resources, make_vm):
    vm_resources.add(make_vm(name="a"))
    vm_resources.add(make_vm(name="b", namespace="other"))

    assert controller.resync() == 2
    assert len(controller.queue) == 2


def test_failure_of_one_object_does_not_block_another(controller, vm_resources, children, metrics, make_vm):
    vm_resources.add(make_vm(name="bad"))
    vm_resources.add(make_vm(name="good"))
    vm_resources.fail_get["default/bad"] = KubeApiError("get failed: 500", status=500)
    controller.resync()

    drain(controller)

    assert "default/good" in children.pods
    assert vm_resources.raw("good")["status"]["state"] == "STARTING"
    bad = vm_resources.raw("bad")
    assert "status" not in bad
    assert failure_count(metrics, controller.snapshot("default/bad")) == 1
    # failed object is parked for the fixed retry delay, the healthy one for the normal requeue
    assert controller.queue._due["default/bad"] - time.monotonic() <= ERROR_REQUEUE_SECONDS
    assert "default/good" in controller.queue._due


def test_snapshot_missing_is_skipped(controller, children):
    controller.queue.add("default/unknown")

    assert controller.process_next(timeout=0)
    assert children.calls == []
    assert controller.queue.processing() == set()


def test_terminal_action_is_not_requeued(controller, vm_resources, make_vm):
    vm_resources.add(make_vm(name="gone"))
    controller.resync()
    del vm_resources.objects["default/gone"]

    drain(controller)

    assert "default/gone" not in controller.queue._due


def test_start_and_stop_drain_workers(controller, vm_resources, children, make_vm):
    vm_resources.add(make_vm(name="a"))
    vm_resources.add(make_vm(name="b"))
    vm_resources.events = [("ADDED", make_vm(name="b"))]

    controller.start()
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and len(children.pods) < 2:
        time.sleep(0.01)
    controller.stop()
    controller.join(5)

    assert set(children.pods) == {"default/a", "default/b"}
    assert all(not w.is_alive() for w in controller._workers)


def test_slow_reconcile_finishes_before_join_returns(controller, vm_resources, children, make_vm):
    vm_resources.add(make_vm(name="slow"))
    started = threading.Event()
    release = threading.Event()
    original = children.read_service

    def slow_read(name, namespace):
        started.set()
        release.wait(2)
        return original(name, namespace)

    children.read_service = slow_read
    controller.resync()
    worker = threading.Thread(target=controller._work)
    controller._workers.append(worker)
    worker.start()

    assert started.wait(2)
    controller.stop()
    release.set()
    controller.join(5)

    assert "default/slow" in children.pods
    assert not worker.is_alive()


def test_child_lookup_errors_are_retried(controller, vm_resources, children, make_vm):
    vm_resources.add(make_vm(name="a"))
    children.failures["read_service"] = ApiException(status=403, reason="Forbidden")
    controller.resync()

    drain(controller)

    assert children.pods == {}
    assert "default/a" in controller.queue._due
