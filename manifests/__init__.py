"""Prompt-format detection and per-tool manifests."""
