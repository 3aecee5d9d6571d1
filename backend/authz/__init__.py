"""
careerhub-authz: role and permission authorization engine.

Reconciles Clerk role claims with the locally cached role record, evaluates
context-scoped permissions, keeps the append-only role-change audit trail and
provides the admin "view-as" impersonation overlay.
"""
