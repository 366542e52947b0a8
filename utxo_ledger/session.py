"""
session.py - Per-Owner Session Context

An OwnerSession bundles everything that is specific to one owner: the
address, the secret key material that binds nullifiers to the owner, the
store holding the owner's partition, and the lock that serializes the
owner's operations (input check -> dry-run -> sign -> submit -> receipt).

Sessions are explicit objects passed to the engine and the reconciliation
service; nothing is held in module-level singletons, so several simulated
owners can share one process and one store.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
import threading
from typing import List, Optional, Tuple

from eth_account import Account
from eth_utils import keccak

from .core import (
    Bytes32, Operation, PrivateUTXO, PendingOperation, UTXOStatus,
    DerivationError, OwnerKey,
    normalize_address, owner_key,
)
from .store import EncryptedLocalStore

logger = logging.getLogger(__name__)

_KEY_MATERIAL_TAG = b"utxo-ledger-owner-secret:v1"


@dataclass(eq=False)
class OwnerSession:
    """
    Context of one owner.

    Attributes:
        owner: Checksum address of the owner
        key_material: Secret bytes mixed into every nullifier the owner derives
        store: Store holding this owner's partition (may be shared with others)
    """
    owner: str
    key_material: bytes
    store: EncryptedLocalStore
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self):
        self.owner = normalize_address(self.owner)
        if not self.key_material:
            raise DerivationError(f"session for {self.owner} has no key material")

    @classmethod
    def from_private_key(cls, private_key: str, store: EncryptedLocalStore) -> OwnerSession:
        """Open a session for the account of `private_key`; key material is derived from it."""
        account = Account.from_key(private_key)
        material = keccak(_KEY_MATERIAL_TAG + bytes(account.key))
        return cls(owner=account.address, key_material=material, store=store)

    @property
    def key(self) -> OwnerKey:
        return owner_key(self.owner)

    def owns(self, record: PrivateUTXO) -> bool:
        return owner_key(record.owner) == self.key

    def apply_confirmed(
        self,
        operation: Operation,
        input_id: Optional[Bytes32],
        outputs: Tuple[PrivateUTXO, ...],
        tx_hash: str,
    ) -> List[PrivateUTXO]:
        """
        Record a confirmed transaction: the input becomes SPENT and every
        output is written, confirmed, into its owner's partition.

        Each output is written as a whole record; outputs for other owners
        are written only here, after confirmation.
        """
        with self.lock:
            if input_id is not None:
                self.store.mark_spent(self.owner, input_id, tx_hash)
            written = []
            for output in outputs:
                record = output.confirmed(tx_hash) if output.status == UTXOStatus.PENDING_CONFIRM else output
                written.append(self.store.save(record.owner, record))
        logger.info("%s confirmed for %s: input=%s outputs=%s tx=%s",
                    operation.value, self.owner, input_id, [o.id for o in written], tx_hash)
        return written

    def journal(self, pending: PendingOperation) -> None:
        self.store.add_pending(self.owner, pending)

    def pending(self) -> List[PendingOperation]:
        return self.store.list_pending(self.owner)
