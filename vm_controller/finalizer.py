"""Finalizer gate wrapped around every reconcile."""

import logging
from typing import Callable

from .action import Action
from .crd_client import CustomResourceClient
from .errors import FinalizerError
from .models import ManagedResource

logger = logging.getLogger(__name__)

Handler = Callable[[ManagedResource], Action]


def finalizer(
    resources: CustomResourceClient,
    name: str,
    obj: ManagedResource,
    apply: Handler,
    cleanup: Handler,
) -> Action:
    """
    Run apply or cleanup for obj, keeping finalizer `name` in step.

    A live object gets the finalizer added before apply runs, so every
    object that reaches apply is guaranteed a cleanup call later. An object
    being deleted has cleanup run first; the finalizer is removed only
    after cleanup succeeds. Cleanup may therefore run more than once and
    must be idempotent.

    Raises:
        FinalizerError: wrapping whatever failed, with the original as cause
    """
    if obj.is_deleting():
        if not obj.has_finalizer(name):
            logger.debug(f"{obj.KIND} {obj.key} is being deleted and holds no finalizer of ours")
            return Action.await_change()

        logger.info(f"Running cleanup for {obj.KIND} {obj.key}")
        try:
            action = cleanup(obj)
        except Exception as e:
            raise FinalizerError(f"cleanup of {obj.KIND} {obj.key} failed: {e}") from e

        remaining = [f for f in obj.metadata.finalizers if f != name]
        try:
            resources.set_finalizers(obj, remaining)
        except Exception as e:
            raise FinalizerError(f"removing finalizer from {obj.KIND} {obj.key} failed: {e}") from e
        logger.info(f"Removed finalizer {name} from {obj.KIND} {obj.key}")
        return action

    if not obj.has_finalizer(name):
        try:
            obj = resources.set_finalizers(obj, obj.metadata.finalizers + [name])
        except Exception as e:
            raise FinalizerError(f"adding finalizer to {obj.KIND} {obj.key} failed: {e}") from e
        logger.info(f"Added finalizer {name} to {obj.KIND} {obj.key}")

    try:
        return apply(obj)
    except Exception as e:
        raise FinalizerError(f"apply of {obj.KIND} {obj.key} failed: {e}") from e
