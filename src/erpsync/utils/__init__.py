"""Shared helpers: redaction, JSON column handling, paths and timestamps."""
