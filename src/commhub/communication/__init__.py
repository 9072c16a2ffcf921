"""Canonical communication entities shared by every provider."""
