"""
Typed failures raised by the repositories and managers.

The transport layer maps each one to an HTTP status; everything else
treats them as ordinary exceptions.
"""


class StorefrontError(Exception):
    """Base exception for this application."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StorefrontError):
    """A referenced user, product, cart, cart item or order does not exist."""


class Conflict(StorefrontError):
    """A unique constraint was violated (duplicate user email)."""


class ValidationFailure(StorefrontError):
    """Missing fields, non-positive quantity, malformed date range."""


class StoreUnavailable(StorefrontError):
    """The underlying store could not be reached."""
