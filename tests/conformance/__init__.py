"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan and its ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_atomicity.py - All-or-nothing loan operations
2. test_conservation.py - Loan operations only move value
3. test_idempotency.py - Duplicate execution handling
4. test_interest.py - Amount due is monotonic and capped
5. test_state_machine.py - Forward-only lifecycle, exclusive terminal states

These tests use hypothesis for property-based testing.
"""
