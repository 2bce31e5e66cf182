"""Shared models, errors and retry helpers."""
