"""
attestation.py - Attestation Signing

Every state-changing vault call carries an attestation: the canonical data
hash of the operation, bound to the next ledger nonce and a timestamp, signed
by the single key the vault trusts.

Signing flow:
    1. nonce = ledger.last_nonce() + 1
    2. message = keccak(operation, data_hash, nonce, timestamp)
    3. signature = personal_sign(message)  (EIP-191, 32-byte payload)
    4. recover the signer locally and compare it to the trusted address
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_hex

from .core import (
    Attestation, Bytes32, Operation,
    NonceConflictError, SigningError,
    normalize_address, now_ts,
)
from .hashing import CanonicalHasher
from .remote import NonceSource

logger = logging.getLogger(__name__)


class AttestationSigner:
    """
    Signs attestations with the authorized attestor key.

    The nonce is read from the ledger at signing time, which makes signing
    read-then-increment against external state: callers serialize signing per
    owner (see OwnerSession) and treat NonceConflictError as retryable.
    """

    def __init__(
        self,
        private_key: Optional[str],
        nonces: NonceSource,
        trusted_signer: Optional[str] = None,
        clock: Callable[[], int] = now_ts,
    ):
        """
        Args:
            private_key: Hex private key of the attestor, or None if unavailable
            nonces: Where the last consumed nonce is read from
            trusted_signer: Address the ledger trusts (default: the key's address)
            clock: Source of unix timestamps
        """
        self._account = None
        if private_key:
            try:
                self._account = Account.from_key(private_key)
            except (ValueError, TypeError) as e:
                raise SigningError(f"attestor key is not a valid private key: {e}") from e
        self._nonces = nonces
        self._clock = clock
        if trusted_signer is not None:
            self.trusted_signer = normalize_address(trusted_signer)
        elif self._account is not None:
            self.trusted_signer = self._account.address
        else:
            self.trusted_signer = None

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account is not None else None

    @property
    def available(self) -> bool:
        return self._account is not None

    def next_nonce(self) -> int:
        return self._nonces.last_nonce() + 1

    def sign(self, operation: Operation, data_hash: Bytes32) -> Attestation:
        """
        Produce a signed attestation for an operation.

        Raises:
            SigningError: If the key is unavailable or the recovered signer is
                          not the trusted signer
        """
        if self._account is None:
            raise SigningError("authorized attestor key is not available")

        nonce = self.next_nonce()
        timestamp = self._clock()
        message_hash = self.message_hash(operation, data_hash, nonce, timestamp)
        message = encode_defunct(primitive=bytes.fromhex(message_hash[2:]))
        signed = Account.sign_message(message, private_key=self._account.key)
        signature = to_hex(signed.signature)

        recovered = Account.recover_message(message, signature=signed.signature)
        if recovered != self.trusted_signer:
            raise SigningError(
                f"attestor signs as {recovered}, ledger trusts {self.trusted_signer}"
            )

        logger.debug("signed %s attestation nonce=%d data_hash=%s", operation.value, nonce, data_hash)
        return Attestation(
            operation=operation,
            data_hash=data_hash,
            nonce=nonce,
            timestamp=timestamp,
            signature=signature,
            signer_address=recovered,
        )

    def ensure_current(self, attestation: Attestation) -> None:
        """
        Reject an attestation whose nonce the ledger no longer expects.

        Raises:
            NonceConflictError: If another attestation consumed the nonce first
        """
        expected = self.next_nonce()
        if attestation.nonce != expected:
            raise NonceConflictError(attestation.operation, attestation.nonce)

    @staticmethod
    def message_hash(operation: Operation, data_hash: Bytes32, nonce: int, timestamp: int) -> Bytes32:
        """The 32-byte hash that is signed as an EIP-191 personal message."""
        return CanonicalHasher.message(operation, data_hash, nonce, timestamp)

    @classmethod
    def recover(cls, attestation: Attestation) -> str:
        """Address that produced the attestation's signature."""
        message_hash = cls.message_hash(
            attestation.operation, attestation.data_hash, attestation.nonce, attestation.timestamp
        )
        message = encode_defunct(primitive=bytes.fromhex(message_hash[2:]))
        return Account.recover_message(message, signature=attestation.signature)

    def verify(self, attestation: Attestation) -> bool:
        """True when the attestation was signed by the trusted signer."""
        if self.trusted_signer is None:
            return False
        try:
            return self.recover(attestation) == self.trusted_signer
        except (ValueError, TypeError):
            return False
