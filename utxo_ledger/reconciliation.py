"""
reconciliation.py - Local/Remote Spent-State Reconciliation

The vault exposes only (id, spent flag) per UTXO. Reconciliation aligns the
owner's encrypted store with that minimal state:

    reconcile(): apply what the ledger knows
        - pending journal entries are settled from their receipts
        - PENDING_CONFIRM records that exist remotely become UNSPENT
        - remote spent flag wins over a local unspent flag
        - a remote unspent flag never clears a local SPENT flag; the
          disagreement is reported (only recover_utxo() can clear it)

    audit(): read-only classification
        local_only    known locally, never reached the ledger
        remote_only   on the ledger, no private data locally (unrecoverable)
        mismatched    spent flags disagree

Private data is never reconstructed from chain data.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .core import (
    Bytes32, Operation, UTXOStatus,
    IrrecoverableUTXOError,
    OUT_OF_BAND_TX, now_ts,
)
from .events import EngineChannels, ReconciliationCompleted
from .remote import ReadLedger, ReceiptSource, RemoteUTXO
from .session import OwnerSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    owner: str
    marked_spent: Tuple[Bytes32, ...] = field(default_factory=tuple)
    confirmed: Tuple[Bytes32, ...] = field(default_factory=tuple)
    mismatched: Tuple[Bytes32, ...] = field(default_factory=tuple)
    settled_pending: Tuple[str, ...] = field(default_factory=tuple)
    discarded: Tuple[Bytes32, ...] = field(default_factory=tuple)
    unresolved_pending: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return bool(self.marked_spent or self.confirmed or self.settled_pending or self.discarded)


@dataclass(frozen=True, slots=True)
class AuditReport:
    owner: str
    local_only: Tuple[Bytes32, ...] = field(default_factory=tuple)
    remote_only: Tuple[Bytes32, ...] = field(default_factory=tuple)
    mismatched: Tuple[Bytes32, ...] = field(default_factory=tuple)
    spendable: Tuple[Bytes32, ...] = field(default_factory=tuple)
    findings: Tuple[IrrecoverableUTXOError, ...] = field(default_factory=tuple)

    @property
    def consistent(self) -> bool:
        return not (self.local_only or self.remote_only or self.mismatched)


class _ReconcileLedger(ReadLedger, ReceiptSource, Protocol):
    """Capabilities reconciliation needs: reads plus receipts."""
    pass


class ReconciliationService:
    """
    Synchronizes an owner's store with the vault's minimal on-chain state.

    Example:
        service = ReconciliationService(vault)
        report = service.reconcile(session)
        findings = service.audit(session).findings
    """

    def __init__(
        self,
        ledger: _ReconcileLedger,
        channels: Optional[EngineChannels] = None,
        clock: Callable[[], int] = now_ts,
    ):
        self.ledger = ledger
        self.channels = channels or EngineChannels()
        self._clock = clock
        self._runs = 0

    def reconcile(self, session: OwnerSession) -> ReconciliationReport:
        """Apply the ledger's spent flags and settled receipts to the owner's store."""
        owner = session.owner
        settled, discarded, unresolved, confirmed = self._settle_pending(session)

        remote = self._remote_index(owner)
        marked_spent: List[Bytes32] = []
        mismatched: List[Bytes32] = []
        with session.lock:
            for record in session.store.list(owner):
                entry = remote.get(record.id)
                if entry is None:
                    continue
                if record.status == UTXOStatus.PENDING_CONFIRM:
                    session.store.confirm(owner, record.id, OUT_OF_BAND_TX)
                    confirmed.append(record.id)
                if entry.is_spent and not record.is_spent:
                    session.store.mark_spent(owner, record.id, entry.spent_tx_hash or OUT_OF_BAND_TX)
                    marked_spent.append(record.id)
                    logger.info("reconcile %s: %s spent on ledger, marked SPENT", owner, record.id)
                elif not entry.is_spent and record.is_spent:
                    mismatched.append(record.id)
                    logger.warning("reconcile %s: %s SPENT locally but unspent on ledger", owner, record.id)
            session.store.touch_reconciled(owner, list(remote), self._clock())

        report = ReconciliationReport(
            owner=owner,
            marked_spent=tuple(marked_spent),
            confirmed=tuple(confirmed),
            mismatched=tuple(mismatched),
            settled_pending=tuple(settled),
            discarded=tuple(discarded),
            unresolved_pending=tuple(unresolved),
        )
        self._runs += 1
        self.channels.reconciliation_completed.publish(ReconciliationCompleted(
            owner=owner,
            marked_spent=report.marked_spent,
            confirmed=report.confirmed,
            mismatched=report.mismatched,
            run_id=self._runs,
        ))
        return report

    def audit(self, session: OwnerSession) -> AuditReport:
        """Classify local and remote ids without changing anything."""
        owner = session.owner
        local = {r.id: r for r in session.store.list(owner)}
        remote = self._remote_index(owner)
        remote_unspent = {u.utxo_id.lower() for u in self.ledger.get_user_unspent_utxos(owner)}

        local_only = sorted(set(local) - set(remote))
        remote_only = sorted(set(remote) - set(local))
        mismatched = sorted(
            i for i in set(local) & set(remote) if local[i].is_spent != remote[i].is_spent
        )
        spendable = sorted(
            i for i, r in local.items() if r.status == UTXOStatus.UNSPENT and i in remote_unspent
        )
        findings = tuple(IrrecoverableUTXOError(owner, i) for i in remote_only)
        for finding in findings:
            logger.error("audit %s: %s", owner, finding)
        return AuditReport(
            owner=owner,
            local_only=tuple(local_only),
            remote_only=tuple(remote_only),
            mismatched=tuple(mismatched),
            spendable=tuple(spendable),
            findings=findings,
        )

    def _remote_index(self, owner: str) -> Dict[Bytes32, RemoteUTXO]:
        return {u.utxo_id.lower(): u for u in self.ledger.get_user_utxos(owner)}

    def _settle_pending(self, session: OwnerSession):
        settled: List[str] = []
        discarded: List[Bytes32] = []
        unresolved: List[str] = []
        confirmed: List[Bytes32] = []
        for pending in session.pending():
            receipt = self.ledger.get_receipt(pending.tx_hash)
            if receipt is None:
                unresolved.append(pending.tx_hash)
                continue
            with session.lock:
                if receipt.success:
                    written = session.apply_confirmed(
                        pending.operation, pending.input_id, pending.outputs, pending.tx_hash,
                    )
                    confirmed.extend(r.id for r in written)
                elif pending.operation == Operation.DEPOSIT:
                    for output in pending.outputs:
                        session.store.discard(session.owner, output.id)
                        discarded.append(output.id)
                session.store.resolve_pending(session.owner, pending.tx_hash)
            settled.append(pending.tx_hash)
            logger.info("settled pending %s tx=%s success=%s",
                        pending.operation.value, pending.tx_hash, receipt.success)
        return settled, discarded, unresolved, confirmed
