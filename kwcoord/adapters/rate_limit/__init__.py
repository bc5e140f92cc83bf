"""Rate limiting adapters.

Counters live in the shared key-value store so every worker enforces the
same per-client budget.
"""
