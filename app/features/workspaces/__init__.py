"""
Workspace membership feature module.

Exposes the read-only membership queries consumed by custom roles.
"""
