"""Chunk storage and embedding generation."""
