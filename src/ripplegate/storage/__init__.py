"""Persisted per-change record sets."""
