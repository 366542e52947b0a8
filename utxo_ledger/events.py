"""
events.py - Typed Channels for State Transitions

One channel per transition, each carrying one immutable event type:

    deposit_confirmed          DepositConfirmed
    spend_confirmed            SpendConfirmed
    reconciliation_completed   ReconciliationCompleted

Delivery is synchronous, in subscription order, and at most once per event:
every event carries a key and a channel never publishes the same key twice.
Each published event receives a channel sequence number so ordering can be
audited after the fact.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import Callable, Generic, List, Optional, Set, Tuple, TypeVar

from .core import Bytes32, Operation

logger = logging.getLogger(__name__)


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class DepositConfirmed:
    owner: str
    utxo_id: Bytes32
    token_address: str
    amount: int
    tx_hash: str

    @property
    def key(self) -> str:
        return f"deposit:{self.tx_hash}"


@dataclass(frozen=True, slots=True)
class SpendConfirmed:
    """A split, transfer or withdraw consumed `input_id` and created `output_ids`."""
    owner: str
    operation: Operation
    input_id: Bytes32
    output_ids: Tuple[Bytes32, ...]
    tx_hash: str

    @property
    def key(self) -> str:
        return f"spend:{self.tx_hash}"


@dataclass(frozen=True, slots=True)
class ReconciliationCompleted:
    owner: str
    marked_spent: Tuple[Bytes32, ...]
    confirmed: Tuple[Bytes32, ...]
    mismatched: Tuple[Bytes32, ...]
    run_id: int = 0

    @property
    def key(self) -> str:
        return f"reconcile:{self.owner}:{self.run_id}"


E = TypeVar("E")


# ============================================================================
# CHANNEL
# ============================================================================

class Channel(Generic[E]):
    """
    Synchronous publish/subscribe channel for one event type.

    A subscriber that raises does not stop delivery to later subscribers;
    the error is logged and collected in `failures`.
    """

    def __init__(self, name: str, event_type: type):
        self.name = name
        self.event_type = event_type
        self._subscribers: List[Callable[[E], None]] = []
        self._delivered: Set[str] = set()
        self._next_sequence = 0
        self.history: List[Tuple[int, E]] = []
        self.failures: List[Tuple[E, Exception]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: E) -> Optional[int]:
        """
        Deliver an event to every subscriber.

        Returns:
            The event's sequence number, or None if its key was already delivered
        """
        if not isinstance(event, self.event_type):
            raise TypeError(f"channel {self.name} carries {self.event_type.__name__}, "
                            f"got {type(event).__name__}")
        if event.key in self._delivered:
            logger.debug("channel %s: duplicate %s suppressed", self.name, event.key)
            return None
        self._delivered.add(event.key)
        sequence = self._next_sequence
        self._next_sequence += 1
        self.history.append((sequence, event))
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.exception("channel %s: subscriber failed on %s", self.name, event.key)
                self.failures.append((event, e))
        return sequence

    def __len__(self) -> int:
        return len(self.history)


@dataclass
class EngineChannels:
    """The channels an engine publishes to. Share one instance to observe several sessions."""
    deposit_confirmed: Channel[DepositConfirmed] = field(
        default_factory=lambda: Channel("deposit_confirmed", DepositConfirmed))
    spend_confirmed: Channel[SpendConfirmed] = field(
        default_factory=lambda: Channel("spend_confirmed", SpendConfirmed))
    reconciliation_completed: Channel[ReconciliationCompleted] = field(
        default_factory=lambda: Channel("reconciliation_completed", ReconciliationCompleted))
