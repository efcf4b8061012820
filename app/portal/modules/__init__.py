"""
Resource modules live under this package.

Each module owns its models/service/blueprint and reuses the platform primitives
(auth, RBAC, audit, validation, DB session) from app.portal.
"""
