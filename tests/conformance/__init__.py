"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan registry.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. atomicity.py - All-or-nothing registry operations
2. reentrancy.py - One state-changing operation at a time
3. state_machine.py - Legal transitions, custody and conservation under
   arbitrary operation sequences

These tests use hypothesis for property-based testing.
"""
