"""Durable work queue abstractions."""
