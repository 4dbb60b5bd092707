"""
Authorization module.

Resolves whether a principal may perform an action on a catalog resource
in a tenant context, with cached per-workspace snapshots and an
asynchronous access audit log.
"""
