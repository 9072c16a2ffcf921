"""
Application-level exceptions mapped to HTTP responses in main.py.
"""


class NotFoundError(Exception):
    """Requested resource does not exist for the caller's workspace."""


class ValidationError(Exception):
    """Request is well-formed but semantically invalid."""


class ConflictError(Exception):
    """Request conflicts with the current state of the resource."""
