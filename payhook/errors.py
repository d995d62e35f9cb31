"""Exception types raised by the webhook pipeline.

Each rejection carries the WebhookResult it maps to so callers can
classify without isinstance ladders.
"""

from payhook.results import WebhookResult


class PayhookError(Exception):
    """Base class for all payhook errors."""

    result = WebhookResult.TRANSIENT_FAILURE

    def __init__(self, reason=""):
        super().__init__(reason)
        self.reason = reason


# ── Ingress (validator) ──

class PayloadRejected(PayhookError):
    """The notification was rejected before touching the database."""


class MalformedPayload(PayloadRejected):
    result = WebhookResult.MALFORMED_PAYLOAD


class InvalidSignature(PayloadRejected):
    result = WebhookResult.INVALID_SIGNATURE


# ── Processing (terminal, recorded on the event row) ──

class ProcessingRejected(PayhookError):
    """A claimed event failed validation inside the unit of work."""

    error_code = None


class NoUserIdentifier(ProcessingRejected):
    result = WebhookResult.NO_USER_IDENTIFIER
    error_code = "no_user_identifier"


class AmountMismatch(ProcessingRejected):
    result = WebhookResult.AMOUNT_MISMATCH
    error_code = "amount_mismatch"


# ── Subscription lifecycle ──

class InvalidTransition(PayhookError):
    """A subscription status change not allowed by the state machine."""

    def __init__(self, current, target):
        super().__init__(f"cannot move subscription from {current} to {target}")
        self.current = current
        self.target = target
