"""
API routes.

- sync: sync health, manual sync and balance triggers, diagnostics
"""
