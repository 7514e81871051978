"""
Civic Ledger - Entity lifecycle and audit-trail pipeline.

Every mutable record (citizen requests, agents, agent results, ledger
records) goes through one create/update/delete path that persists state,
appends an audit entry, optionally anchors a content digest to an external
ledger, and keeps the read cache fresh.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
