"""
Database Models

This package defines the persistent records of the authentication layer using SQLAlchemy ORM.

Key Models:
- base.py: Declarative base, shared column types and the dialect-aware INSERT helper
- users.py: Local user accounts (email sign-up or federated provisioning)
- external_identity.py: Identity provider subjects and their optional link to a user
- denylist.py: Revoked session token identifiers with their original expiry
- health.py: In-process health gauge (not persisted)

Relationships:
- User 1 -- 0..1 ExternalIdentity, enforced by unique indexes on both `subject` and `user_id`
- RevokedToken rows are independent of any user; they reference a token id only

Linking writes are conditional (insert-if-absent, compare-and-set on `user_id`) so that concurrent
requests can never link one subject to two users.
"""
