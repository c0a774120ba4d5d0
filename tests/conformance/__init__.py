"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the marketplace.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_fee_properties.py - Fee formula, bounds and monotonicity
2. test_conservation.py - Tokens are never created or destroyed; custody matches state
3. test_atomicity.py - Failed operations change nothing
4. test_pagination.py - Bounded enumeration covers every listing exactly once
5. test_terminal_states.py - DELIVERED and CANCELLED are final

These tests use hypothesis for property-based testing.
"""
