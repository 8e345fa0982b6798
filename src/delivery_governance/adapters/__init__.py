"""Adapters — persistence for the governance core.

Contains:
- database.py       — Primary database engine and session factory
- repositories.py   — Issue and remediation run/step repositories
- lawbook_store.py  — Lawbook version store with an active pointer
- audit_wall.py     — Separate audit DB session and AuditTrailRepository
"""

__all__: list[str] = []
