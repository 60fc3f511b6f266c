import json
import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import redis

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intake.errors import InvalidTransitionError, PersistenceError, RecordNotFoundError
from intake.models import DispatchOutcome, DispatchResult, NormalizedSubmission, SpamAssessment
from integrations.contact_store import ContactStore


def make_dispatch(notification_sent=True):
    notification = (DispatchOutcome.success("<n-1@devflow.example>", provider="simulation")
                    if notification_sent else DispatchOutcome.failure(ConnectionError("refused"), provider="gmail"))
    return DispatchResult(
        notification=notification,
        confirmation=DispatchOutcome.success("<c-1@devflow.example>", provider="simulation"),
    )


class TestContactStore:
    """Test contact records in memory mode."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = ContactStore()
        self.submission = NormalizedSubmission(
            name="Jean Dupont",
            email="jean@example.com",
            message="Bonjour, je suis intéressé par vos services web.",
            company="Acme",
            ip="203.0.113.7",
        )
        self.assessment = SpamAssessment(score=10, is_spam=False, reasons=("no_phone",))

    def create(self, submission=None, assessment=None, dispatch=None):
        return self.store.create_record(
            submission or self.submission,
            assessment or self.assessment,
            dispatch or make_dispatch(),
        )

    def age(self, record_id, days):
        created = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        self.store._memory[record_id]["created_at"] = created

    def test_memory_backend_without_url(self):
        assert self.store.backend == "memory"
        assert self.store.ping() is True

    def test_unreachable_redis_falls_back_to_memory(self):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError("refused")

        with patch("integrations.contact_store.redis.from_url", return_value=client):
            store = ContactStore("redis://localhost:6390/0")

        assert store.backend == "memory"

    def test_create_and_get(self):
        record_id = self.create(dispatch=make_dispatch(notification_sent=False))

        record = self.store.get(record_id)

        assert record["status"] == "new"
        assert record["email"] == "jean@example.com"
        assert record["company"] == "Acme"
        assert record["phone"] is None
        assert record["spam_score"] == 10
        assert record["spam_reasons"] == ["no_phone"]
        assert record["email_sent"]["notification"]["sent"] is False
        assert record["email_sent"]["notification"]["error"] == "refused"
        assert record["email_sent"]["confirmation"]["message_id"] == "<c-1@devflow.example>"
        assert record["notes"] == []

    def test_get_returns_copy(self):
        record_id = self.create()

        self.store.get(record_id)["status"] = "handled"

        assert self.store.get(record_id)["status"] == "new"

    def test_unknown_record(self):
        with pytest.raises(RecordNotFoundError):
            self.store.get("missing")

    def test_find_by_email_keeps_every_submission(self):
        first = self.create()
        second = self.create()
        self.age(first, 1)

        records = self.store.find_by_email(" Jean@Example.com ")

        assert [r["id"] for r in records] == [second, first]

    def test_status_moves_forward(self):
        record_id = self.create()

        self.store.set_status(record_id, "in_progress")
        record = self.store.set_status(record_id, "handled")

        assert record["status"] == "handled"

    def test_status_cannot_move_backward(self):
        record_id = self.create()
        self.store.set_status(record_id, "handled")

        with pytest.raises(InvalidTransitionError):
            self.store.set_status(record_id, "read")

    def test_unknown_status(self):
        record_id = self.create()

        with pytest.raises(InvalidTransitionError):
            self.store.set_status(record_id, "deleted")

    def test_mark_read(self):
        record_id = self.create()

        assert self.store.mark_read(record_id)["status"] == "read"

        self.store.set_status(record_id, "handled")
        assert self.store.mark_read(record_id)["status"] == "handled"

    def test_mark_spam_archives(self):
        record_id = self.create()

        record = self.store.mark_spam(record_id)

        assert record["is_spam"] is True
        assert record["status"] == "archived"

    def test_add_note(self):
        record_id = self.create()

        self.store.add_note(record_id, "Called back, wants a quote")
        record = self.store.add_note(record_id, "Quote sent", author="Souleymane")

        assert [n["content"] for n in record["notes"]] == ["Called back, wants a quote", "Quote sent"]
        assert record["notes"][0]["author"] == "System"
        assert record["notes"][1]["author"] == "Souleymane"

    def test_recent_contacts_excludes_spam_and_old(self):
        recent = self.create()
        old = self.create()
        spam = self.create(assessment=SpamAssessment(score=80, is_spam=True, reasons=("spam_keyword",)))
        self.age(old, 10)

        ids = [r["id"] for r in self.store.recent_contacts()]

        assert ids == [recent]
        assert spam not in ids

    def test_stats(self):
        first = self.create()
        self.create()
        self.store.mark_spam(first)

        stats = self.store.stats()

        assert stats["total"] == 2
        assert stats["this_month"] == 2
        assert stats["spam"] == 1
        assert stats["status_new"] == 1
        assert stats["status_archived"] == 1

    def test_clean_old_contacts_only_removes_old_archived(self):
        old_archived = self.create()
        old_active = self.create()
        new_archived = self.create()
        self.store.set_status(old_archived, "archived")
        self.store.set_status(new_archived, "archived")
        self.age(old_archived, 400)
        self.age(old_active, 400)

        removed = self.store.clean_old_contacts()

        assert removed == 1
        with pytest.raises(RecordNotFoundError):
            self.store.get(old_archived)
        assert self.store.get(old_active)["status"] == "new"
        assert self.store.get(new_archived)["status"] == "archived"

    def test_redis_errors_become_persistence_errors(self):
        store = ContactStore()
        store.r = MagicMock()
        store.r.get.side_effect = redis.ConnectionError("connection reset")

        with pytest.raises(PersistenceError):
            store.get("abc")

    def test_concurrent_updates_keep_every_change(self):
        record_id = self.create()
        original_load = self.store._load

        def slow_load(rid):
            record = original_load(rid)
            time.sleep(0.05)
            return record

        with patch.object(self.store, "_load", side_effect=slow_load):
            workers = [
                threading.Thread(target=self.store.add_note, args=(record_id, "Called back")),
                threading.Thread(target=self.store.mark_spam, args=(record_id,)),
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()

        record = self.store.get(record_id)
        assert [n["content"] for n in record["notes"]] == ["Called back"]
        assert record["is_spam"] is True
        assert record["status"] == "archived"


class TestContactStoreRedis:
    """Test optimistic updates against a mocked Redis client."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = ContactStore()
        self.store.r = MagicMock()
        self.pipe = self.store.r.pipeline.return_value.__enter__.return_value
        self.record = {"id": "abc", "email": "jean@example.com", "status": "new", "is_spam": False, "notes": []}

    def test_update_retries_when_record_changes(self):
        self.pipe.get.return_value = json.dumps(self.record)
        self.pipe.execute.side_effect = [redis.WatchError(), [True]]

        record = self.store.add_note("abc", "Quote sent")

        assert record["notes"][0]["content"] == "Quote sent"
        assert self.pipe.watch.call_count == 2
        self.pipe.watch.assert_called_with("contact:abc")
        saved = json.loads(self.pipe.set.call_args.args[1])
        assert saved["notes"][0]["content"] == "Quote sent"

    def test_update_of_missing_record(self):
        self.pipe.get.return_value = None

        with pytest.raises(RecordNotFoundError):
            self.store.mark_spam("abc")

        self.pipe.execute.assert_not_called()

    def test_invalid_transition_is_not_written(self):
        self.pipe.get.return_value = json.dumps({**self.record, "status": "handled"})

        with pytest.raises(InvalidTransitionError):
            self.store.set_status("abc", "read")

        self.pipe.set.assert_not_called()

    def test_connection_failure_during_update(self):
        self.pipe.watch.side_effect = redis.ConnectionError("connection reset")

        with pytest.raises(PersistenceError):
            self.store.mark_read("abc")
