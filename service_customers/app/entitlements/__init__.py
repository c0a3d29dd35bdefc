"""
Entitlement reconciliation (pure, no I/O).
"""
