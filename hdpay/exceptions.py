"""
hdpay.exceptions — Error Taxonomy
==================================

Every failure the wallet core can surface, grouped by how a caller is
expected to react:

* ``ConfigurationError`` — fatal; the process cannot operate safely.
* ``AuthorizationError`` / ``DecryptionError`` — surfaced to the caller,
  deliberately indistinguishable from each other.
* ``UpstreamUnavailable`` / ``ConcurrencyConflict`` — retryable.
* ``DomainInvariantViolation`` — a bug signal; the operation is rejected.
"""

from __future__ import annotations


class HdPayError(Exception):
    """Base class for all hdpay errors."""


class ConfigurationError(HdPayError):
    """A required secret or setting is missing."""


class AuthorizationError(HdPayError):
    """Wallet credentials were rejected.

    The message never reveals whether the wallet exists.
    """

    def __init__(self, message: str = "Invalid wallet credentials") -> None:
        super().__init__(message)


class DecryptionError(HdPayError):
    """Ciphertext failed authentication (tampered, truncated or wrong key)."""

    def __init__(self, message: str = "Failed to decrypt wallet data") -> None:
        super().__init__(message)


class UpstreamUnavailable(HdPayError):
    """A blockchain explorer or price oracle timed out or misbehaved."""


class ConcurrencyConflict(HdPayError):
    """A concurrent writer won a race; retry the single operation."""


class DomainInvariantViolation(HdPayError):
    """An operation would break a data-model invariant."""


class NotFoundError(HdPayError):
    """The requested invoice or record does not exist."""


class UnsupportedCurrency(HdPayError, ValueError):
    """The asset symbol is not in the supported asset table."""
