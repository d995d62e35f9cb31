"""Tests for the event ledger (delivery dedup + event status transitions)."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from payhook.models.webhook_event import WebhookEvent
from payhook.services import event_ledger
from payhook.services.event_ledger import AlreadyProcessed, AlreadyReceived, Claimed
from payhook.services.payload_validator import parse_payload


def _add_event(session, status, event_id="evt_001", retry_count=0):
    event = WebhookEvent(
        external_event_id=event_id,
        payload="{}",
        status=status,
        retry_count=retry_count,
    )
    session.add(event)
    session.commit()
    return event


class TestClaim:

    def test_unseen_event_is_claimed(self, db_session, make_body):
        payload = parse_payload(make_body())
        result = event_ledger.claim(db_session, payload)

        assert isinstance(result, Claimed)
        event = db_session.get(WebhookEvent, result.event_record_id)
        assert event.status == WebhookEvent.PENDING
        assert event.payload == payload.raw
        assert event.retry_count == 0

    def test_processed_event(self, db_session, make_body):
        existing = _add_event(db_session, WebhookEvent.PROCESSED)
        result = event_ledger.claim(db_session, parse_payload(make_body()))
        assert result == AlreadyProcessed(existing.id)

    @pytest.mark.parametrize("status", [
        WebhookEvent.PENDING, WebhookEvent.FAILED, WebhookEvent.DUPLICATE,
    ])
    def test_other_statuses_are_already_received(self, db_session, make_body, status):
        existing = _add_event(db_session, status)
        result = event_ledger.claim(db_session, parse_payload(make_body()))
        assert result == AlreadyReceived(existing.id, status)

    def test_row_locked_by_concurrent_claim(self, db_session, make_body):
        """SKIP LOCKED hides the row; the insert then hits the unique key."""
        _add_event(db_session, WebhookEvent.PENDING)

        hidden = MagicMock()
        hidden.first.return_value = None
        with patch.object(event_ledger, "claim_query", return_value=hidden):
            result = event_ledger.claim(db_session, parse_payload(make_body()))

        assert isinstance(result, AlreadyReceived)
        assert WebhookEvent.query.count() == 1

    def test_claim_query_skips_locked_rows(self, db_session):
        query = event_ledger.claim_query(db_session, "evt_001")
        sql = str(query.statement.compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE SKIP LOCKED" in sql


class TestTransitions:

    def test_pending_to_processed(self, db_session):
        event = _add_event(db_session, WebhookEvent.PENDING)
        event_ledger.mark_processed(db_session, event)
        assert event.status == WebhookEvent.PROCESSED
        assert event.processed_at is not None

    def test_pending_to_failed_is_terminal(self, db_session):
        event = _add_event(db_session, WebhookEvent.PENDING)
        event_ledger.mark_failed(db_session, event, "amount_mismatch", "too cheap")
        assert event.status == WebhookEvent.FAILED
        assert event.error_code == "amount_mismatch"
        assert event.retryable is False

    @pytest.mark.parametrize("status", [WebhookEvent.PROCESSED, WebhookEvent.DUPLICATE])
    def test_closed_events_never_move(self, db_session, status):
        event = _add_event(db_session, status)
        with pytest.raises(ValueError):
            event_ledger.mark_processed(db_session, event)
        with pytest.raises(ValueError):
            event_ledger.mark_failed(db_session, event, "x", "y")


class TestRecordFailure:

    def test_recreates_rolled_back_row(self, db_session, make_body):
        payload = parse_payload(make_body())
        event = event_ledger.record_failure(db_session, payload, RuntimeError("db down"))
        db_session.commit()

        assert event.status == WebhookEvent.FAILED
        assert event.retryable is True
        assert event.retry_count == 1
        assert event.error_code == "transient_failure"
        assert event.payload == payload.raw

    def test_increments_existing_failed_row(self, db_session, make_body):
        _add_event(db_session, WebhookEvent.FAILED, retry_count=2)
        event = event_ledger.record_failure(
            db_session, parse_payload(make_body()), RuntimeError("again")
        )
        assert event.retry_count == 3

    def test_leaves_processed_row_alone(self, db_session, make_body):
        existing = _add_event(db_session, WebhookEvent.PROCESSED)
        result = event_ledger.record_failure(
            db_session, parse_payload(make_body()), RuntimeError("late")
        )
        assert result is None
        assert existing.status == WebhookEvent.PROCESSED
