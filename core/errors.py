"""
Authorization Errors
====================

Expected policy outcomes are never exceptions: they surface as deny
decisions. The classes here cover the two other cases:

- ``RequestValidationError``: raised while normalizing a malformed request.
  The engine catches it and returns a deny carrying ``reason``.
- ``PolicyConfigurationError`` and subclasses: the engine itself cannot
  decide (no catalog, broken cache). These propagate to the caller and are
  never downgraded to an allow.
"""


class AuthzError(Exception):
    """Base class for authorization engine errors."""


class RequestValidationError(AuthzError):
    """
    A request failed structural validation.

    Args:
        reason: Stable reason string placed on the resulting deny decision
        field: Name of the offending field, for diagnostics only
    """

    def __init__(self, reason: str, field: str = None):
        super().__init__(reason)
        self.reason = reason
        self.field = field


class PolicyConfigurationError(AuthzError):
    """The engine is misconfigured and cannot produce a decision."""


class CatalogUnavailableError(PolicyConfigurationError):
    """No role catalog snapshot is loaded, or the catalog store is unreadable."""


class CacheError(PolicyConfigurationError):
    """The decision cache failed."""
