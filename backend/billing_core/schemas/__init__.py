"""Inbound payload schemas."""
