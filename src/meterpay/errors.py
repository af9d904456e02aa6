"""Marketplace errors. Every rejection carries a distinguishing reason.

All errors derive from ValueError so that callers which only care about
"the operation was rejected" can keep catching ValueError.

Errors are raised before any mutation or, when raised mid-operation,
unwind the whole operation (see engine.guard).
Nothing here is ever swallowed or retried.
"""

from __future__ import annotations


class MarketplaceError(ValueError):
    """Root of all marketplace rejections."""

    kind = "marketplace"

    def __init__(self, message: str, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason or self.kind


class ValidationError(MarketplaceError):
    """Malformed or out-of-range input. Caller may fix and resubmit."""

    kind = "validation"


class AuthorizationError(MarketplaceError):
    """Caller lacks the required relationship to the resource."""

    kind = "authorization"


class StateError(MarketplaceError):
    """Operation against a session or component in the wrong state."""

    kind = "state"


class ReentrancyError(StateError):
    """A guarded entry point was re-entered while already executing."""

    kind = "reentrancy"


class InsufficientFundsError(MarketplaceError):
    """Balance, payment or deposit does not cover the operation."""

    kind = "insufficient_funds"


class ReplayError(MarketplaceError):
    """A consumption claim did not strictly exceed the recorded value."""

    kind = "replay"


class ExternalTransferError(MarketplaceError):
    """The asset transfer primitive failed; the enclosing call unwinds."""

    kind = "external_transfer"
