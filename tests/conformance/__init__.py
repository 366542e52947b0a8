"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the private-UTXO engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. homomorphism.py - Pedersen commitments add like the values they hide
2. conservation.py - Split outputs sum exactly to the input
3. nullifier_uniqueness.py - Distinct UTXOs never share a nullifier
4. determinism.py - Canonical hashes are pure and field-sensitive
5. nonce_monotonicity.py - Accepted attestation nonces strictly increase
6. idempotency.py - Repeated persistence leaves one record; SPENT is terminal
7. atomicity.py - A rejected or reverted operation changes nothing

These tests use hypothesis for property-based testing.
"""
