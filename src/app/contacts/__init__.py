"""Contact persistence module -- models, schemas, store contract and organization resolver.

Provides SQLAlchemy models (User, Organization, Contact, Activity, SyncHistory),
Pydantic schemas for the persistence boundary, the SyncStore interface consumed
by the Pipedrive sync engine, ContactRepository as its PostgreSQL implementation,
and OrganizationResolver for deduplicated organization find-or-create.
"""
