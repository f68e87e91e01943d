"""
Core modules for the token ledger.

This package contains pricing, the consumption flow, usage recording,
notifications and the permission-gated admin operations.
"""
