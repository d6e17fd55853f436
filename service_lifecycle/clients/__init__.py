"""Outbound HTTP clients."""
