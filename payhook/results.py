"""Result classification returned by the webhook pipeline.

Transport-agnostic: mapping to HTTP status codes lives in the webhooks
blueprint.
"""

import enum
from dataclasses import dataclass
from typing import Optional


class WebhookResult(str, enum.Enum):
    ACCEPTED = "accepted"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_RECEIVED = "already_received"
    MALFORMED_PAYLOAD = "malformed_payload"
    INVALID_SIGNATURE = "invalid_signature"
    NO_USER_IDENTIFIER = "no_user_identifier"
    AMOUNT_MISMATCH = "amount_mismatch"
    TRANSIENT_FAILURE = "transient_failure"

    @property
    def is_success(self):
        """Results the notification source should treat as delivered."""
        return self in (
            WebhookResult.ACCEPTED,
            WebhookResult.ALREADY_PROCESSED,
            WebhookResult.ALREADY_RECEIVED,
        )

    @property
    def is_terminal_failure(self):
        return self in (
            WebhookResult.MALFORMED_PAYLOAD,
            WebhookResult.INVALID_SIGNATURE,
            WebhookResult.NO_USER_IDENTIFIER,
            WebhookResult.AMOUNT_MISMATCH,
        )


@dataclass(frozen=True)
class ProcessingOutcome:
    result: WebhookResult
    detail: str = ""
    event_record_id: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
