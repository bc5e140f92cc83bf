"""Key-value store adapters.

Every coordination primitive is built from the single-key operations defined
on ``AbstractKeyValueStore``. Redis is the production backend; the in-memory
backend serves local development and tests.
"""
