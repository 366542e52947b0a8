"""
commitment.py - Pedersen Commitments on secp256k1

C = value*G + blinding*H, where G is the secp256k1 base point and H is a
second generator derived by hashing G onto the curve (try-and-increment),
so that nobody knows the discrete log of H with respect to G.

Commitments are additively homomorphic:

    commit(v1, r1) + commit(v2, r2) == commit(v1 + v2, r1 + r2)

which lets the ledger check that split outputs conserve the input value by
comparing points, without any amount being revealed.
"""

from __future__ import annotations
import secrets
from typing import Dict, Iterable, Optional, Sequence

from ecdsa import SECP256k1, ellipticcurve, numbertheory
from eth_utils import keccak

from .core import Commitment, RangeError, MAX_VALUE, CURVE_ORDER


_CURVE = SECP256k1.curve
_P = _CURVE.p()
_N = CURVE_ORDER
_G = SECP256k1.generator

H_DOMAIN_TAG = b"pedersen-h"


def _derive_h() -> ellipticcurve.PointJacobi:
    """Hash G onto the curve, incrementing x until a point of order n is found."""
    seed = _G.x().to_bytes(32, "big") + _G.y().to_bytes(32, "big") + H_DOMAIN_TAG
    x = int.from_bytes(keccak(seed), "big") % _P
    while True:
        alpha = (pow(x, 3, _P) + _CURVE.a() * x + _CURVE.b()) % _P
        try:
            beta = numbertheory.square_root_mod_prime(alpha, _P)
        except numbertheory.Error:
            x = (x + 1) % _P
            continue
        # Even root
        y = beta if beta % 2 == 0 else _P - beta
        candidate = ellipticcurve.PointJacobi(_CURVE, x, y, 1, _N)
        if _N * candidate == ellipticcurve.INFINITY and candidate != ellipticcurve.INFINITY:
            return candidate
        x = (x + 1) % _P


_H = _derive_h()


def _mul(k: int, point):
    k %= _N
    if k == 0:
        return ellipticcurve.INFINITY
    return point * k


def _add(a, b):
    if a == ellipticcurve.INFINITY:
        return b
    if b == ellipticcurve.INFINITY:
        return a
    return a + b


class CommitmentEngine:
    """
    Produces and checks Pedersen commitments.

    Pure once the generators are initialized (at import time); instances
    carry no state and can be shared between sessions.
    """

    G = _G
    H = _H
    order = _N

    def commit(self, value: int, blinding: Optional[int] = None) -> Commitment:
        """
        Commit to a value.

        Args:
            value: Amount, 0 <= value <= MAX_VALUE
            blinding: Blinding scalar; a fresh random one is drawn when omitted.
                      Reduced modulo the curve order.

        Raises:
            RangeError: If the value is negative or exceeds MAX_VALUE, or the
                        blinding is negative or a multiple of the curve order
        """
        self._check_value(value)
        if blinding is None:
            blinding = self.random_blinding()
        if not isinstance(blinding, int) or blinding < 0:
            raise RangeError("blinding factor must be a non-negative integer")
        if blinding % _N == 0:
            raise RangeError("blinding factor must be nonzero modulo the curve order")
        point = _add(_mul(value, _G), _mul(blinding, _H))
        return Commitment.from_point(point)

    def verify(self, commitment: Commitment, value: int, blinding: int) -> bool:
        """Check that a commitment opens to (value, blinding)."""
        try:
            return self.commit(value, blinding) == commitment
        except RangeError:
            return False

    @staticmethod
    def add(*commitments: Commitment) -> Commitment:
        """Point sum of one or more commitments."""
        if not commitments:
            raise ValueError("add() needs at least one commitment")
        total = ellipticcurve.INFINITY
        for c in commitments:
            total = _add(total, c.to_point())
        return Commitment.from_point(total)

    def verify_sum(self, inputs: Sequence[Commitment], outputs: Sequence[Commitment]) -> bool:
        """True when the inputs and outputs commit to the same total with the same total blinding."""
        if not inputs or not outputs:
            return False
        try:
            return self.add(*inputs) == self.add(*outputs)
        except RangeError:
            return False

    @staticmethod
    def random_blinding() -> int:
        """Uniform scalar in [1, n-1] from the OS CSPRNG."""
        return secrets.randbelow(_N - 1) + 1

    @staticmethod
    def balancing_blinding(input_blinding: int, other_blindings: Iterable[int]) -> int:
        """
        Blinding for the last output of a split so that all output blindings
        sum to the input blinding modulo n.
        """
        return (input_blinding - sum(other_blindings)) % _N

    def split_blindings(self, input_blinding: int, count: int) -> list:
        """
        Draw `count` output blindings summing to the input blinding.

        With exact value conservation this makes the output commitments sum
        to the input commitment point.
        """
        if count < 1:
            raise ValueError("count must be at least 1")
        blindings = [self.random_blinding() for _ in range(count - 1)]
        last = self.balancing_blinding(input_blinding, blindings)
        # A zero last blinding would leave that output unhidden; redraw
        while count > 1 and last == 0:
            blindings = [self.random_blinding() for _ in range(count - 1)]
            last = self.balancing_blinding(input_blinding, blindings)
        return blindings + [last]

    @staticmethod
    def generator_info() -> Dict[str, str]:
        """Generator coordinates, as the ledger is configured with them."""
        return {
            "curve": "secp256k1",
            "Gx": hex(_G.x()),
            "Gy": hex(_G.y()),
            "Hx": hex(_H.x()),
            "Hy": hex(_H.y()),
            "order": hex(_N),
        }

    @staticmethod
    def _check_value(value: int) -> None:
        if not isinstance(value, int) or isinstance(value, bool):
            raise RangeError(f"value must be an integer, got {type(value).__name__}")
        if value < 0:
            raise RangeError(f"value {value} is negative")
        if value > MAX_VALUE:
            raise RangeError(f"value {value} exceeds ceiling {MAX_VALUE}")
