"""Reconciler for the Pokemon toy resource."""

import logging

from .action import Action
from .config import REQUEUE_SECONDS
from .models import Pokemon, build_status_patch
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class PokemonReconciler(Reconciler):
    """A Pokemon is alive while its spec reports health above zero."""

    kind = Pokemon

    def apply(self, pokemon: Pokemon) -> Action:
        should_alive = pokemon.spec.health > 0

        if not pokemon.is_alive() and should_alive:
            self.ctx.recorder.publish(
                pokemon,
                reason="AliveRequested",
                note=f"Aliving `{pokemon.name}`",
                action="Aliving",
            )

        # always overwrite status with what we saw
        self.ctx.resources.patch_status(
            pokemon.name,
            pokemon.namespace,
            build_status_patch(Pokemon, alive=should_alive),
        )
        return Action.requeue(REQUEUE_SECONDS)

    def cleanup(self, pokemon: Pokemon) -> Action:
        logger.info(f"Cleaning up Pokemon \"{pokemon.name}\"")
        self.ctx.recorder.publish(
            pokemon,
            reason="DeleteRequested",
            note=f"Delete `{pokemon.name}`",
            action="Deleting",
        )
        return Action.await_change()
