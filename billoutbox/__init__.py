"""Transactional outbox for billing events: SQLite storage, publishers and a retrying dispatcher."""

__version__ = "0.1.0"