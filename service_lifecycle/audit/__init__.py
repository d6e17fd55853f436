"""Audit trail recording."""
