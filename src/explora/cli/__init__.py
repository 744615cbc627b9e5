"""Explora CLI."""
