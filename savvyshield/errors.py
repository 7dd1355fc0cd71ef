"""
Shield domain exceptions.

Route handlers translate these into HTTP errors; background workers
log them and carry on.
"""


class ShieldError(Exception):
    """Base class for all SavvyShield errors."""


class EnforcementStateError(ShieldError):
    """Raised when an enforcement transition is not allowed from its current state."""


class EnforcementNotFoundError(ShieldError):
    """Raised when an enforcement id does not exist."""


class WebhookVerificationError(ShieldError):
    """Raised when an incoming enforcement webhook fails signature or replay checks."""


class DecisionTableError(ShieldError):
    """Raised when a decision table cannot be loaded or is incomplete."""
