"""What the dispatcher should do with an object after a reconcile."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Action:
    """
    Result of a reconcile.

    requeue_after is the delay in seconds before the object is reconciled
    again even without a new watch event; None means wait for the next
    change.
    """
    requeue_after: Optional[float] = None

    @classmethod
    def requeue(cls, seconds: float) -> "Action":
        return cls(requeue_after=max(0.0, float(seconds)))

    @classmethod
    def await_change(cls) -> "Action":
        return cls(requeue_after=None)

    @property
    def is_terminal(self) -> bool:
        return self.requeue_after is None
