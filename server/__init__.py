"""Retrieval, chat and the HTTP API."""
