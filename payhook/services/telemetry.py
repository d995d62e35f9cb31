"""Structured event sink.

Pipeline milestones (claimed, processed, rejected, reconciled) are emitted
as named events on the "payhook.telemetry" logger with their fields in
`extra`, so any log handler or shipper can pick them up as records.
"""

import logging

logger = logging.getLogger("payhook.telemetry")


def emit(name, level=logging.INFO, **fields):
    """Emit a structured event.

    Example:
        emit("webhook.processed", event_id="evt_1", payment_id="pay_1")
    """
    summary = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
    logger.log(level, f"{name} {summary}".rstrip(), extra={"event": name, "fields": fields})
