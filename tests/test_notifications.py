"""
Tests for the notification outbox and dispatcher
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from config import Config
from jobs.notification_processor import run_notification_processor
from models import NotificationQueue, NotificationStatus
from services.notification_dispatcher import NotificationDispatcher, render
from services.notification_queue import NotificationQueueService

from factories import make_user


class TestEnqueue:

    def test_idempotency_key_prevents_duplicates(self, session):
        user = make_user(session)

        first = NotificationQueueService.enqueue(session, user.id, "payment_held", {"contract_id": 1}, idempotency_key="k1")
        second = NotificationQueueService.enqueue(session, user.id, "payment_held", {"contract_id": 1}, idempotency_key="k1")

        assert first.id == second.id
        assert session.query(NotificationQueue).count() == 1

    def test_enqueue_rolls_back_with_caller_transaction(self, session):
        user = make_user(session)
        session.commit()

        NotificationQueueService.enqueue(session, user.id, "payment_held", {"contract_id": 1})
        session.rollback()

        assert session.query(NotificationQueue).count() == 0


class TestProcessPending:

    def test_delivers_and_marks_sent(self, session):
        user = make_user(session)
        NotificationQueueService.enqueue(session, user.id, "escrow_released", {"contract_id": 7})
        session.commit()
        dispatcher = MagicMock()

        stats = NotificationQueueService.process_pending_notifications(dispatcher=dispatcher)

        assert stats == {"processed": 1, "sent": 1, "retried": 0, "failed": 0}
        dispatcher.notify.assert_called_once_with(user.id, "escrow_released", {"contract_id": 7})
        row = session.query(NotificationQueue).one()
        assert row.status == NotificationStatus.SENT.value
        assert row.sent_at is not None

    def test_failure_is_retried_then_marked_failed(self, session, monkeypatch):
        monkeypatch.setattr(Config, "NOTIFICATION_MAX_RETRIES", 2)
        user = make_user(session)
        NotificationQueueService.enqueue(session, user.id, "escrow_released", {"contract_id": 7})
        session.commit()
        dispatcher = MagicMock()
        dispatcher.notify.side_effect = requests.exceptions.ConnectionError("webhook down")

        first = NotificationQueueService.process_pending_notifications(dispatcher=dispatcher)
        second = NotificationQueueService.process_pending_notifications(dispatcher=dispatcher)
        third = NotificationQueueService.process_pending_notifications(dispatcher=dispatcher)

        assert first["retried"] == 1
        assert second["failed"] == 1
        assert third["processed"] == 0
        row = session.query(NotificationQueue).one()
        assert row.status == NotificationStatus.FAILED.value
        assert row.retry_count == 2
        assert "webhook down" in row.error_message

    def test_high_priority_first(self, session):
        user = make_user(session)
        NotificationQueueService.enqueue(session, user.id, "escrow_released", {}, priority=2)
        NotificationQueueService.enqueue(session, user.id, "contract_disputed", {}, priority=1)
        session.commit()
        dispatcher = MagicMock()

        NotificationQueueService.process_pending_notifications(batch_size=1, dispatcher=dispatcher)

        dispatcher.notify.assert_called_once_with(user.id, "contract_disputed", {})

    def test_job_wrapper_never_raises(self, session):
        with patch.object(NotificationQueueService, "process_pending_notifications", side_effect=RuntimeError("boom")):
            stats = run_notification_processor()

        assert stats["processed"] == 0


class TestDispatcher:

    def test_render_fills_template(self):
        rendered = render("payment_refunded", {"amount": "800.00", "currency": "ARS", "contract_id": 3})

        assert rendered["title"] == "Payment refunded"
        assert rendered["body"] == "800.00 ARS was refunded for contract #3."

    def test_render_tolerates_missing_keys(self):
        assert render("escrow_released", {})["body"] == "Escrow for contract #{contract_id} was released."

    def test_log_only_without_webhook(self):
        with patch("services.notification_dispatcher.requests.post") as post:
            assert NotificationDispatcher(webhook_url="").notify(1, "payment_held", {"contract_id": 1})
        post.assert_not_called()

    def test_posts_to_webhook(self):
        with patch("services.notification_dispatcher.requests.post") as post:
            post.return_value.raise_for_status.return_value = None
            NotificationDispatcher(webhook_url="https://hooks.example.com/notify", timeout=5).notify(
                9, "payout_credited", {"amount": "100.00"}
            )

        post.assert_called_once()
        args, kwargs = post.call_args
        assert args[0] == "https://hooks.example.com/notify"
        assert kwargs["json"]["user_id"] == 9
        assert kwargs["json"]["body"] == "100.00 was added to your balance."
        assert kwargs["timeout"] == 5

    def test_http_error_propagates_for_retry(self):
        with patch("services.notification_dispatcher.requests.post") as post:
            post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("503")

            with pytest.raises(requests.exceptions.RequestException):
                NotificationDispatcher(webhook_url="https://hooks.example.com/notify").notify(1, "payment_held", {})
