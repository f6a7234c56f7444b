"""Notification queue API tests"""
import pytest

from backoffice.db.notification_queue import claim_item, finish_item, insert_item
from backoffice.models.notification_queue import QueueItem
from backoffice.services.notification_service import build_dedup_key

from conftest import INTERNAL_HEADERS, RESEND_TEST_DELIVERED


def _queue(db_session, slug="payment_success", recipients=None, **kwargs):
    return insert_item(
        db_session,
        template_slug=slug,
        recipients=recipients or [RESEND_TEST_DELIVERED],
        variables={"client_name": "Ana", "amount": "49.90"},
        **kwargs
    )


def _finish(db_session, item, status, error=None):
    assert claim_item(db_session, item.id)
    assert finish_item(db_session, item.id, status, error_message=error)
    db_session.refresh(item)
    return item


@pytest.mark.critical
class TestInternalKey:
    def test_missing_key_is_rejected(self, client):
        response = client.post("/api/notifications/process-queue")
        assert response.status_code == 401

    def test_wrong_key_is_rejected(self, client):
        response = client.get("/api/notifications/queue/stats", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 401

    def test_public_endpoints_need_no_key(self, client):
        assert client.get("/health").json() == {"status": "healthy", "database": "ok"}
        assert client.get("/metrics").status_code == 200


@pytest.mark.critical
class TestProcessQueueEndpoint:
    def test_run_returns_summary(self, client, db_session, email_templates, mock_email_service):
        _queue(db_session)
        _queue(db_session, slug="unknown_template")

        response = client.post("/api/notifications/process-queue", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["sent"] == 1
        assert body["failed"] == 0
        assert body["escalated"] is False
        assert mock_email_service.Emails.send.call_count == 1

    def test_limit_bounds_the_batch(self, client, db_session, email_templates, mock_email_service):
        for _ in range(3):
            _queue(db_session)

        response = client.post("/api/notifications/process-queue?limit=2", headers=INTERNAL_HEADERS)

        assert response.json()["processed"] == 2
        assert db_session.query(QueueItem).filter(QueueItem.status == "pending").count() == 1

    def test_empty_queue_is_a_noop(self, client, db_session):
        response = client.post("/api/notifications/process-queue", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        assert response.json()["processed"] == 0


@pytest.mark.high
class TestQueueInspection:
    def test_stats_counts_every_status(self, client, db_session):
        _queue(db_session)
        _finish(db_session, _queue(db_session), "failed", "boom")

        response = client.get("/api/notifications/queue/stats", headers=INTERNAL_HEADERS)

        body = response.json()
        assert body["counts"]["pending"] == 1
        assert body["counts"]["failed"] == 1
        assert body["counts"]["sent"] == 0
        assert body["total"] == 2
        assert body["consecutive_failures"] == 1
        assert body["escalation_threshold"] == 5

    def test_list_filters_by_status(self, client, db_session):
        pending = _queue(db_session, metadata={"reference_id": "evt_1"})
        _finish(db_session, _queue(db_session), "sent")

        response = client.get("/api/notifications/queue?status=pending", headers=INTERNAL_HEADERS)

        items = response.json()
        assert [i["id"] for i in items] == [pending.id]
        assert items[0]["metadata"] == {"reference_id": "evt_1"}

    def test_list_rejects_unknown_status(self, client):
        response = client.get("/api/notifications/queue?status=lost", headers=INTERNAL_HEADERS)
        assert response.status_code == 400


@pytest.mark.high
class TestRequeue:
    def test_failed_item_is_requeued_as_new_item(self, client, db_session):
        failed = _finish(db_session, _queue(db_session, dedup_key="k1"), "failed", "provider down")

        response = client.post(f"/api/notifications/queue/{failed.id}/requeue", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        new_id = response.json()["id"]
        assert new_id != failed.id
        new_item = db_session.get(QueueItem, new_id)
        assert new_item.status == "pending"
        assert new_item.attempts == 0
        assert new_item.dedup_key == "k1"
        assert new_item.meta["requeued_from"] == failed.id
        db_session.refresh(failed)
        assert failed.status == "failed"

    def test_pending_item_cannot_be_requeued(self, client, db_session):
        item = _queue(db_session)

        response = client.post(f"/api/notifications/queue/{item.id}/requeue", headers=INTERNAL_HEADERS)

        assert response.status_code == 409

    def test_unknown_item_returns_404(self, client):
        response = client.post("/api/notifications/queue/does-not-exist/requeue", headers=INTERNAL_HEADERS)
        assert response.status_code == 404

    def test_clear_processed_keeps_pending(self, client, db_session):
        pending = _queue(db_session)
        _finish(db_session, _queue(db_session), "sent")
        _finish(db_session, _queue(db_session), "skipped")

        response = client.delete("/api/notifications/queue/processed", headers=INTERNAL_HEADERS)

        assert response.json() == {"deleted": 2}
        assert [i.id for i in db_session.query(QueueItem).all()] == [pending.id]


@pytest.mark.high
class TestEnqueueEndpoint:
    def test_enqueue_creates_pending_item(self, client, db_session):
        response = client.post(
            "/api/notifications/enqueue",
            headers=INTERNAL_HEADERS,
            json={
                "template_slug": "payment_success",
                "recipients": [RESEND_TEST_DELIVERED],
                "variables": {"amount": "10.00"},
                "reference_id": "evt_api",
            },
        )

        assert response.json() == {"queued": True}
        item = db_session.query(QueueItem).one()
        assert item.dedup_key == build_dedup_key("payment_success", [RESEND_TEST_DELIVERED], "evt_api")

    def test_enqueue_requires_recipients(self, client):
        response = client.post(
            "/api/notifications/enqueue",
            headers=INTERNAL_HEADERS,
            json={"template_slug": "payment_success", "recipients": []},
        )
        assert response.status_code == 422
