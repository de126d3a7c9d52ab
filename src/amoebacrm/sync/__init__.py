"""Contact sync module -- reconciliation between local leads and AmoebaCRM.

Provides SQLAlchemy models (LeadModel, IdentityLinkModel), the IdentityLedger
and LeadRepository built on them, Pydantic schemas for records and settings,
and the SyncEngine that runs push and pull passes.
"""
