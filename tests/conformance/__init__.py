"""
Conformance Test Suite

Normative behavior of the perpetual ledger, organized by invariant:
1. test_size_invariants.py - Leg sizes add up to pool and position totals
2. test_borrowing_invariants.py - Accrual is lazy, monotone and idempotent
3. test_atomicity.py - Failed operations leave no trace
4. test_fee_conservation.py - Round trips cost exactly the fees charged

These tests use hypothesis for property-based testing.
"""
