"""
Ledger subsystem package.

Provides:
- Contract status lifecycle, domain models and errors
- SQLite stores for orders (with the change outbox), the review queue and notifications
- Services for oracle reads, reconciliation, fan-out, projections, notifications and queries
- Application-level LedgerAPI, the service composition root and the FastAPI control surface
"""
