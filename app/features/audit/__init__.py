"""
Audit feature module.

Records role and permission changes for compliance review.
"""
