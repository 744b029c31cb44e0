"""
Transaction Test Harness

Concurrency-safe orchestration for integration tests that run against a remote
transactional query service: an engine lease pool, a transaction runner and a
hierarchical result tree.
"""

__version__ = "0.1.0"
