"""
store.py - Encrypted Per-Owner UTXO Store

The ledger stores no private data, so this store is the only place where
values, blinding factors and nullifier preimages live. Losing an owner's
partition makes that owner's unspent UTXOs unrecoverable.

Layout:
    One partition per owner, keyed by the lower-cased address. A partition
    holds the owner's records, the pending-operation journal and the
    recovery audit trail. It is serialized as JSON (integers as decimal
    strings) and sealed with an XSalsa20-Poly1305 SecretBox whose key is
    derived by HKDF-SHA256 from the master secret and the partition key.

    root/<owner>.json.enc   when a root directory is configured
    in-memory blobs         otherwise (the blobs are still encrypted)

Rules:
    - save() is an idempotent upsert by id; only status, transaction and
      reconciliation fields of a stored record may change
    - a nullifier belongs to at most one record of a partition
    - status never moves backwards through save()/import (SPENT stays SPENT)
    - SPENT -> UNSPENT only through recover(), which is logged
    - every write replaces the whole partition atomically
"""

from __future__ import annotations
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Dict, List, Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox

from .core import (
    PrivateUTXO, PendingOperation, UTXOStatus,
    OwnershipError, StoreError, UTXONotFound,
    OwnerKey, owner_key, now_ts,
)

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1
_KEY_INFO = b"utxo-ledger-store-v1|"
_SUFFIX = ".json.enc"

# Position of each status in the one-way lifecycle.
_STATUS_RANK = {
    UTXOStatus.PENDING_CONFIRM: 0,
    UTXOStatus.UNSPENT: 1,
    UTXOStatus.SPENT: 2,
}

# Fields fixed when a record is first written.
_IMMUTABLE_FIELDS = (
    "owner", "token_address", "value", "commitment", "blinding_factor",
    "nullifier_hash", "kind", "parent_id",
)


def _empty_partition() -> Dict[str, Any]:
    return {"version": STORE_FORMAT_VERSION, "records": {}, "pending": {}, "recoveries": []}


class EncryptedLocalStore:
    """
    Per-owner encrypted collection of PrivateUTXO records.

    Thread Safety:
        Partition reads and writes are serialized by an internal lock, so a
        record is always written whole.
    """

    def __init__(self, master_secret: bytes, root: Optional[Union[str, Path]] = None):
        """
        Args:
            master_secret: At least 16 bytes; partition keys are derived from it
            root: Directory for partition files; None keeps encrypted blobs in memory
        """
        if not isinstance(master_secret, (bytes, bytearray)) or len(master_secret) < 16:
            raise StoreError("store master secret must be at least 16 bytes")
        self._master = bytes(master_secret)
        self.root = Path(root) if root is not None else None
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self._blobs: Dict[OwnerKey, bytes] = {}
        self._lock = threading.RLock()

    # ========================================================================
    # RECORDS
    # ========================================================================

    def save(self, owner: str, utxo: PrivateUTXO) -> PrivateUTXO:
        """
        Upsert a record by id and return what is stored afterwards.

        Saving identical content twice leaves one record. A save that would
        move the status backwards keeps the stored status.

        Raises:
            OwnershipError: If the record belongs to another owner
            StoreError: If the save would change an immutable field of a
                stored record, or reuse a nullifier held by another record
        """
        key = owner_key(owner)
        if owner_key(utxo.owner) != key:
            raise OwnershipError(f"UTXO {utxo.id} belongs to {utxo.owner}, not {owner}")
        with self._lock:
            partition = self._load(key)
            existing = partition["records"].get(utxo.id)
            stored = utxo
            if existing is None:
                for other in partition["records"].values():
                    if other["nullifierHash"] == utxo.nullifier_hash:
                        raise StoreError(
                            f"nullifier {utxo.nullifier_hash} already belongs to UTXO {other['id']}"
                        )
            else:
                current = PrivateUTXO.from_dict(existing)
                changed = [f for f in _IMMUTABLE_FIELDS if getattr(current, f) != getattr(utxo, f)]
                if changed:
                    raise StoreError(f"UTXO {utxo.id} is immutable; save would change {', '.join(changed)}")
                if _STATUS_RANK[utxo.status] < _STATUS_RANK[current.status]:
                    logger.debug("save of %s ignored: %s -> %s would move backwards",
                                 utxo.id, current.status.value, utxo.status.value)
                    return current
                if current == utxo:
                    return current
            partition["records"][utxo.id] = stored.to_dict()
            self._write(key, partition)
        return stored

    def save_many(self, owner: str, utxos: List[PrivateUTXO]) -> List[PrivateUTXO]:
        with self._lock:
            return [self.save(owner, u) for u in utxos]

    def get(self, owner: str, utxo_id: str) -> Optional[PrivateUTXO]:
        data = self._load(owner_key(owner))["records"].get(utxo_id.lower())
        return PrivateUTXO.from_dict(data) if data is not None else None

    def require(self, owner: str, utxo_id: str) -> PrivateUTXO:
        record = self.get(owner, utxo_id)
        if record is None:
            raise UTXONotFound(f"UTXO {utxo_id} not found for {owner}")
        return record

    def list(self, owner: str) -> List[PrivateUTXO]:
        records = [PrivateUTXO.from_dict(d) for d in self._load(owner_key(owner))["records"].values()]
        return sorted(records, key=lambda r: (r.created_at, r.id))

    def list_unspent(self, owner: str, token_address: Optional[str] = None) -> List[PrivateUTXO]:
        records = [r for r in self.list(owner) if r.status == UTXOStatus.UNSPENT]
        if token_address is not None:
            token = token_address.lower()
            records = [r for r in records if r.token_address.lower() == token]
        return records

    def mark_spent(self, owner: str, utxo_id: str, tx_hash: str) -> PrivateUTXO:
        """Mark a record SPENT by `tx_hash`. Marking a spent record again is a no-op."""
        with self._lock:
            record = self.require(owner, utxo_id)
            if record.is_spent:
                return record
            return self.save(owner, record.spent(tx_hash))

    def confirm(self, owner: str, utxo_id: str, tx_hash: str) -> PrivateUTXO:
        """Move a PENDING_CONFIRM record to UNSPENT."""
        with self._lock:
            record = self.require(owner, utxo_id)
            if record.status != UTXOStatus.PENDING_CONFIRM:
                return record
            return self.save(owner, record.confirmed(tx_hash))

    def discard(self, owner: str, utxo_id: str) -> None:
        """
        Remove a record that never reached the ledger.

        Raises:
            StoreError: If the record is confirmed; confirmed records are never deleted
        """
        key = owner_key(owner)
        with self._lock:
            partition = self._load(key)
            data = partition["records"].get(utxo_id.lower())
            if data is None:
                return
            if data["status"] != UTXOStatus.PENDING_CONFIRM.value:
                raise StoreError(f"cannot discard {data['status']} UTXO {utxo_id}")
            del partition["records"][utxo_id.lower()]
            self._write(key, partition)

    def touch_reconciled(self, owner: str, utxo_ids: List[str], timestamp: int) -> None:
        key = owner_key(owner)
        with self._lock:
            partition = self._load(key)
            for utxo_id in utxo_ids:
                data = partition["records"].get(utxo_id)
                if data is not None:
                    data["lastReconciledAt"] = str(timestamp)
            self._write(key, partition)

    def recover(self, owner: str, utxo_id: str, reason: str) -> PrivateUTXO:
        """
        Administrative override: SPENT -> UNSPENT with the recovered tag.

        The only path by which a spent flag is cleared. Every use is written
        to the partition's recovery trail and logged at WARNING.
        """
        if not reason:
            raise ValueError("recovery requires a reason")
        key = owner_key(owner)
        with self._lock:
            partition = self._load(key)
            record = self.require(owner, utxo_id)
            if not record.is_spent:
                raise StoreError(f"UTXO {utxo_id} is not spent; nothing to recover")
            restored = PrivateUTXO.from_dict({
                **record.to_dict(),
                "status": UTXOStatus.UNSPENT.value,
                "spentTxHash": None,
                "recovered": True,
                "recoveryReason": reason,
            })
            partition["records"][restored.id] = restored.to_dict()
            partition["recoveries"].append({
                "id": restored.id,
                "previousSpentTxHash": record.spent_tx_hash,
                "reason": reason,
                "at": str(now_ts()),
            })
            self._write(key, partition)
        logger.warning("RECOVERY OVERRIDE: %s of %s restored to UNSPENT (%s)", utxo_id, owner, reason)
        return restored

    def recovery_log(self, owner: str) -> List[Dict[str, str]]:
        return list(self._load(owner_key(owner))["recoveries"])

    # ========================================================================
    # PENDING-OPERATION JOURNAL
    # ========================================================================

    def add_pending(self, owner: str, pending: PendingOperation) -> None:
        key = owner_key(owner)
        with self._lock:
            partition = self._load(key)
            partition["pending"][pending.tx_hash] = pending.to_dict()
            self._write(key, partition)

    def list_pending(self, owner: str) -> List[PendingOperation]:
        return [PendingOperation.from_dict(d) for d in self._load(owner_key(owner))["pending"].values()]

    def resolve_pending(self, owner: str, tx_hash: str) -> None:
        key = owner_key(owner)
        with self._lock:
            partition = self._load(key)
            if partition["pending"].pop(tx_hash, None) is not None:
                self._write(key, partition)

    # ========================================================================
    # AGGREGATES / BACKUP
    # ========================================================================

    def balance(self, owner: str, token_address: Optional[str] = None) -> Union[int, Dict[str, int]]:
        """Unspent value for one token, or a {token: value} map when no token is given."""
        unspent = self.list_unspent(owner, token_address)
        if token_address is not None:
            return sum(r.value for r in unspent)
        totals: Dict[str, int] = {}
        for r in unspent:
            totals[r.token_address] = totals.get(r.token_address, 0) + r.value
        return totals

    def stats(self, owner: str) -> Dict[str, int]:
        records = self.list(owner)
        return {
            "total": len(records),
            "unspent": sum(1 for r in records if r.status == UTXOStatus.UNSPENT),
            "spent": sum(1 for r in records if r.status == UTXOStatus.SPENT),
            "pending_confirm": sum(1 for r in records if r.status == UTXOStatus.PENDING_CONFIRM),
            "recovered": sum(1 for r in records if r.recovered),
            "pending_operations": len(self._load(owner_key(owner))["pending"]),
        }

    def export_owner(self, owner: str) -> str:
        """Plaintext JSON backup of an owner's records. Contains blinding factors."""
        partition = self._load(owner_key(owner))
        return json.dumps({"version": STORE_FORMAT_VERSION, "owner": owner_key(owner),
                           "records": list(partition["records"].values())}, sort_keys=True)

    def import_owner(self, owner: str, payload: str) -> int:
        """
        Merge a backup produced by export_owner(). Returns the number of
        records whose stored content changed.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise StoreError(f"backup is not valid JSON: {e}") from e
        if data.get("owner") != owner_key(owner):
            raise OwnershipError(f"backup belongs to {data.get('owner')}, not {owner}")
        changed = 0
        with self._lock:
            for raw in data.get("records", []):
                record = PrivateUTXO.from_dict(raw)
                before = self.get(owner, record.id)
                if self.save(owner, record) != before:
                    changed += 1
        return changed

    def clear_owner(self, owner: str) -> None:
        key = owner_key(owner)
        with self._lock:
            self._blobs.pop(key, None)
            if self.root is not None:
                path = self._path(key)
                if path.exists():
                    path.unlink()
        logger.info("cleared store partition of %s", key)

    def owners(self) -> List[OwnerKey]:
        if self.root is None:
            return sorted(self._blobs)
        return sorted(p.name[: -len(_SUFFIX)] for p in self.root.glob(f"*{_SUFFIX}"))

    # ========================================================================
    # ENCRYPTION / IO
    # ========================================================================

    def _box(self, key: OwnerKey) -> SecretBox:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=SecretBox.KEY_SIZE,
            salt=None,
            info=_KEY_INFO + key.encode(),
        )
        return SecretBox(hkdf.derive(self._master))

    def _path(self, key: OwnerKey) -> Path:
        return self.root / f"{key}{_SUFFIX}"

    def _read_blob(self, key: OwnerKey) -> Optional[bytes]:
        if self.root is None:
            return self._blobs.get(key)
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def _load(self, key: OwnerKey) -> Dict[str, Any]:
        with self._lock:
            blob = self._read_blob(key)
            if blob is None:
                return _empty_partition()
            try:
                plaintext = self._box(key).decrypt(blob)
            except CryptoError as e:
                raise StoreError(f"cannot decrypt partition of {key}: wrong secret or corrupted file") from e
            partition = json.loads(plaintext.decode("utf-8"))
            if partition.get("version") != STORE_FORMAT_VERSION:
                raise StoreError(f"unsupported store format {partition.get('version')} for {key}")
            return partition

    def _write(self, key: OwnerKey, partition: Dict[str, Any]) -> None:
        plaintext = json.dumps(partition, sort_keys=True).encode("utf-8")
        blob = bytes(self._box(key).encrypt(plaintext))
        if self.root is None:
            self._blobs[key] = blob
            return
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path(key))
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise StoreError(f"failed to write partition of {key}: {e}") from e
