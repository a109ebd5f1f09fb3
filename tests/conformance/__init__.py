"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the vault engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Double-entry balances and pool bookkeeping
2. atomicity.py - All-or-nothing vault operations
3. idempotency.py - Duplicate and stale transaction handling
4. determinism.py - Reproducible behavior
5. rounding.py - Conversions and fees round in favour of the pool

These tests use hypothesis for property-based testing.
"""
