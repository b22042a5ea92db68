"""Explicit pairing state and its subscribers."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

UNPAIRED = "unpaired"
REGISTERED = "registered"
PAIRED = "paired"


@dataclass(frozen=True)
class PairingState:
    status: str = UNPAIRED  # 'unpaired' | 'registered' | 'paired'
    device_id: Optional[str] = None
    code: Optional[str] = None
    code_expires_at: Optional[float] = None
    token_expires_at: Optional[float] = None

    @property
    def is_paired(self) -> bool:
        return self.status == PAIRED


Listener = Callable[[PairingState], None]


class StateSubscribers:
    """Listeners notified on every state change, in subscription order."""

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, state: PairingState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Pairing state listener failed")
