"""Watch dispatcher driving a reconciler for one resource kind."""

import logging
import signal
import threading
from typing import Dict, List, Optional

from kubernetes import watch

from .config import DEFAULT_WORKERS, WATCH_RETRY_SECONDS, WATCH_TIMEOUT_SECONDS
from .errors import CrdNotInstalled, KubeApiError
from .models import ManagedResource
from .reconciler import Reconciler
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Watches one custom resource kind and reconciles every object of it.

    Watch events and requeues feed a keyed WorkQueue drained by a pool of
    worker threads, so different objects reconcile in parallel while the
    same object is never reconciled twice at once.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        namespace: str = "",
        workers: int = DEFAULT_WORKERS,
        watch_timeout: int = WATCH_TIMEOUT_SECONDS,
    ):
        """
        Initialize the controller.

        Args:
            reconciler: Reconciler for the watched kind
            namespace: Namespace to watch ("" for all namespaces)
            workers: Number of reconcile worker threads
            watch_timeout: Server-side timeout of one watch request
        """
        self.reconciler = reconciler
        self.kind = reconciler.kind
        self.resources = reconciler.ctx.resources
        self.namespace = namespace
        self.workers = max(1, workers)
        self.watch_timeout = watch_timeout

        self.queue = WorkQueue()
        self._store: Dict[str, ManagedResource] = {}
        self._store_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._watcher: Optional[watch.Watch] = None
        self._threads: List[threading.Thread] = []
        self._workers: List[threading.Thread] = []

    def check_installed(self) -> None:
        """
        Fail fast when the CRD is not registered.

        Raises:
            CrdNotInstalled: if the resource type cannot be listed
        """
        try:
            self.resources.probe()
        except KubeApiError as e:
            logger.error(f"CRD {self.kind.PLURAL}.{self.kind.GROUP} is not queryable; {e}. Is the CRD installed?")
            logger.info("Installation: kubectl apply -f yaml/crd.yaml")
            raise CrdNotInstalled(f"{self.kind.PLURAL}.{self.kind.GROUP} is not installed") from e

    def observe(self, obj: ManagedResource) -> None:
        """Record the latest snapshot of obj and schedule it."""
        with self._store_lock:
            self._store[obj.key] = obj
        self.queue.add(obj.key)

    def forget(self, key: str) -> None:
        with self._store_lock:
            self._store.pop(key, None)

    def snapshot(self, key: str) -> Optional[ManagedResource]:
        with self._store_lock:
            return self._store.get(key)

    def handle_event(self, event_type: str, raw: dict) -> None:
        """
        Handle a watch event.

        Args:
            event_type: ADDED, MODIFIED, DELETED, BOOKMARK or ERROR
            raw: The object from the event
        """
        if event_type not in ("ADDED", "MODIFIED", "DELETED"):
            logger.debug(f"Ignoring {event_type} event for {self.kind.KIND}")
            return

        try:
            obj = self.kind.from_crd(raw)
        except (ValueError, TypeError) as e:
            metadata = raw.get("metadata", {})
            logger.error(
                f"Skipping malformed {self.kind.KIND} "
                f"{metadata.get('namespace')}/{metadata.get('name')}: {e}"
            )
            return

        if event_type == "DELETED":
            self.forget(obj.key)
            logger.info(f"{self.kind.KIND} DELETED: {obj.key}")
            return

        logger.debug(f"{self.kind.KIND} {event_type}: {obj.key}")
        self.observe(obj)

    def resync(self) -> int:
        """
        List every object and enqueue it.

        Returns:
            Number of objects listed
        """
        objects = self.resources.list(self.namespace)
        for obj in objects:
            self.observe(obj)
        logger.info(f"Listed {len(objects)} existing {self.kind.PLURAL}")
        return len(objects)

    def watch_resources(self) -> None:
        """Watch for events in a loop, relisting after every reconnect."""
        logger.info(f"Starting {self.kind.KIND} watcher...")

        while not self._stop_event.is_set():
            try:
                self.resync()
                self._watcher = watch.Watch()
                for event_type, raw in self.resources.watch(
                    namespace=self.namespace,
                    timeout=self.watch_timeout,
                    watcher=self._watcher,
                ):
                    if self._stop_event.is_set():
                        break
                    self.handle_event(event_type, raw)
            except Exception as e:
                if self._stop_event.is_set():
                    break
                logger.error(f"{self.kind.KIND} watch error: {e}")
                self._stop_event.wait(WATCH_RETRY_SECONDS)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile one key from the queue.

        Returns:
            False once the queue is shutting down, True otherwise
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down

        try:
            obj = self.snapshot(key)
            if obj is None:
                logger.debug(f"{self.kind.KIND} {key} no longer cached, skipping")
                return True

            try:
                action = self.reconciler.reconcile(obj)
            except Exception as e:
                action = self.reconciler.error_policy(obj, e)

            if action.is_terminal:
                logger.debug(f"{self.kind.KIND} {key} waits for the next change")
            else:
                logger.debug(f"Requeueing {self.kind.KIND} {key} in {action.requeue_after}s")
                self.queue.add_after(key, action.requeue_after)
        finally:
            self.queue.done(key)
        return True

    def _work(self) -> None:
        while self.process_next():
            pass

    def start(self) -> None:
        """Start the watcher and worker threads."""
        logger.info(f"Starting {self.kind.KIND} controller")
        logger.info(f"Namespace: {self.namespace or 'all namespaces'}")
        logger.info(f"Workers: {self.workers}")

        watcher_thread = threading.Thread(
            target=self.watch_resources,
            name=f"{self.kind.PLURAL}-watcher",
            daemon=True
        )
        watcher_thread.start()
        self._threads.append(watcher_thread)

        for i in range(self.workers):
            worker = threading.Thread(
                target=self._work,
                name=f"{self.kind.PLURAL}-worker-{i}",
                daemon=True
            )
            worker.start()
            self._workers.append(worker)

    def stop(self) -> None:
        """Stop watching and let in-flight reconciles finish."""
        if self.queue.shutting_down:
            return
        logger.info(f"Stopping {self.kind.KIND} controller...")
        self._stop_event.set()
        if self._watcher is not None:
            self._watcher.stop()
        self.queue.shutdown()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the workers to drain their current reconciles."""
        for worker in self._workers:
            worker.join(timeout)
        in_flight = self.queue.processing()
        if in_flight:
            logger.warning(f"{self.kind.KIND} controller stopped with reconciles in flight: {sorted(in_flight)}")


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set stop_event on SIGINT/SIGTERM. Only valid on the main thread."""
    def _handle(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
