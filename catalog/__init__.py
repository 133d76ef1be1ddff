"""Upstream VOD catalog access."""
