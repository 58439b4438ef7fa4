"""
Security Gates Compliance Test Suite.

Gate variant tests:
- Network traffic, TLS and metadata leakage
- Row-level security, access control and migrations
- Property, fuzz, chaos and load testing suites
"""
