"""Reconcile engine shared by every managed resource kind."""

import logging
from dataclasses import dataclass, field
from typing import Type

from .action import Action
from .config import CONFLICT_REQUEUE_SECONDS, ERROR_REQUEUE_SECONDS
from .crd_client import ChildResourceClient, CustomResourceClient
from .errors import KubeApiError, is_conflict
from .events import EventRecorder
from .finalizer import finalizer
from .metrics import Diagnostics, Metrics
from .models import ManagedResource

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """Everything a reconciler is allowed to touch, built once at startup."""
    resources: CustomResourceClient
    children: ChildResourceClient
    recorder: EventRecorder
    metrics: Metrics
    diagnostics: Diagnostics = field(default_factory=Diagnostics)


def error_policy(obj: ManagedResource, error: BaseException, metrics: Metrics) -> Action:
    """
    Decide when to retry an object whose reconcile failed.

    Every error is retryable. Conflicts are retried right away against fresh
    state; everything else waits the fixed error delay.
    """
    metrics.reconcile_failure(obj, error)
    if is_conflict(error):
        logger.info(f"Conflict while reconciling {obj.KIND} {obj.key}, retrying: {error}")
        return Action.requeue(CONFLICT_REQUEUE_SECONDS)

    logger.warning(f"Reconcile of {obj.KIND} {obj.key} failed: {error}")
    return Action.requeue(ERROR_REQUEUE_SECONDS)


class Reconciler:
    """
    Base reconciler for one resource kind.

    Subclasses implement apply (converge a live object) and cleanup (tear
    down before deletion). Both must be idempotent.
    """

    kind: Type[ManagedResource] = ManagedResource

    def __init__(self, ctx: Context):
        self.ctx = ctx

    def reconcile(self, obj: ManagedResource) -> Action:
        """
        Reconcile obj, which may be a stale snapshot.

        The live object is fetched before anything is written. Errors
        propagate to the caller, which hands them to error_policy.
        """
        with self.ctx.metrics.count_and_measure(self.kind.KIND):
            self.ctx.diagnostics.touch()
            logger.info(f"Reconciling {self.kind.KIND} \"{obj.name}\" in {obj.namespace}")

            try:
                live = self.ctx.resources.get(obj.name, obj.namespace)
            except KubeApiError as e:
                if e.status == 404:
                    logger.debug(f"{self.kind.KIND} {obj.key} is gone, nothing to reconcile")
                    return Action.await_change()
                raise

            return finalizer(
                self.ctx.resources,
                self.kind.FINALIZER,
                live,
                apply=self.apply,
                cleanup=self.cleanup,
            )

    def apply(self, obj: ManagedResource) -> Action:
        raise NotImplementedError

    def cleanup(self, obj: ManagedResource) -> Action:
        raise NotImplementedError

    def error_policy(self, obj: ManagedResource, error: BaseException) -> Action:
        return error_policy(obj, error, self.ctx.metrics)
