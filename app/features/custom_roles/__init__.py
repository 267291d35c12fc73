"""
Custom roles feature module.

Workspace-scoped custom roles layered over the system base roles, with
per-resource permission overrides, a read-through permission cache and
pre-built role templates.
"""
