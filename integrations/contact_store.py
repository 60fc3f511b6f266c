import json
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import redis
from loguru import logger

from intake.errors import InvalidTransitionError, PersistenceError, RecordNotFoundError
from intake.models import DispatchResult, NormalizedSubmission, SpamAssessment, provided

STATUSES = ("new", "read", "in_progress", "handled", "archived")

RECORD_KEY = "contact:{}"
INDEX_KEY = "contacts:by_created"
EMAIL_KEY = "contacts:by_email:{}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ContactStore:
    """Redis-backed store for contact records, in memory when Redis is unavailable."""

    def __init__(self, redis_url: Optional[str] = None):
        """Connect to Redis when a URL is given."""
        self.r = None
        self._memory: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

        if not redis_url:
            logger.warning("No REDIS_URL configured, contact records kept in memory")
            return

        try:
            self.r = redis.from_url(redis_url, decode_responses=True)
            # Test connection
            self.r.ping()
            logger.info("Redis connection established successfully")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            # Fallback to in-memory storage (not recommended for production)
            self.r = None

    @property
    def backend(self) -> str:
        return "redis" if self.r else "memory"

    def _save(self, record: Dict[str, Any]) -> None:
        try:
            if self.r:
                created = datetime.fromisoformat(record["created_at"]).timestamp()
                pipe = self.r.pipeline()
                pipe.set(RECORD_KEY.format(record["id"]), json.dumps(record))
                pipe.zadd(INDEX_KEY, {record["id"]: created})
                pipe.sadd(EMAIL_KEY.format(record["email"]), record["id"])
                pipe.execute()
            else:
                self._memory[record["id"]] = json.loads(json.dumps(record))
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to save contact {record['id']}: {e}") from e

    def _load(self, record_id: str) -> Dict[str, Any]:
        try:
            if self.r:
                raw = self.r.get(RECORD_KEY.format(record_id))
                record = json.loads(raw) if raw else None
            else:
                record = self._memory.get(record_id)
                record = json.loads(json.dumps(record)) if record else None
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to load contact {record_id}: {e}") from e

        if record is None:
            raise RecordNotFoundError(f"Contact {record_id} not found")
        return record

    def _delete(self, record: Dict[str, Any]) -> None:
        try:
            if self.r:
                pipe = self.r.pipeline()
                pipe.delete(RECORD_KEY.format(record["id"]))
                pipe.zrem(INDEX_KEY, record["id"])
                pipe.srem(EMAIL_KEY.format(record["email"]), record["id"])
                pipe.execute()
            else:
                self._memory.pop(record["id"], None)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to delete contact {record['id']}: {e}") from e

    def _all(self) -> List[Dict[str, Any]]:
        """All records, newest first."""
        if self.r:
            try:
                ids = self.r.zrevrange(INDEX_KEY, 0, -1)
            except redis.RedisError as e:
                raise PersistenceError(f"Failed to list contacts: {e}") from e
            return [self._load(record_id) for record_id in ids]
        with self._lock:
            records = [json.loads(json.dumps(r)) for r in self._memory.values()]
        return sorted(records, key=lambda r: r["created_at"], reverse=True)

    def _update(self, record_id: str, change: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        """
        Apply ``change`` to a record as one read-modify-write.

        Memory mode holds the store lock for the whole cycle; Redis mode
        WATCHes the record key and retries when another writer got there first.
        """
        if not self.r:
            with self._lock:
                record = self._load(record_id)
                change(record)
                self._save(record)
                return record

        key = RECORD_KEY.format(record_id)
        try:
            with self.r.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None:
                            raise RecordNotFoundError(f"Contact {record_id} not found")
                        record = json.loads(raw)
                        change(record)
                        pipe.multi()
                        pipe.set(key, json.dumps(record))
                        pipe.execute()
                        return record
                    except redis.WatchError:
                        logger.debug(f"Contact {record_id} changed during update, retrying")
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to update contact {record_id}: {e}") from e

    def create_record(self, submission: NormalizedSubmission, assessment: SpamAssessment,
                      dispatch: DispatchResult) -> str:
        """
        Store an accepted submission with its spam assessment and send receipts.

        Returns:
            The new record id
        """
        now = _now().isoformat()
        record = {
            "id": uuid.uuid4().hex,
            "name": submission.name,
            "email": submission.email,
            "message": submission.message,
            "phone": provided(submission.phone),
            "company": provided(submission.company),
            "budget": provided(submission.budget),
            "timeline": provided(submission.timeline),
            "status": "new",
            "source": "website",
            "ip": submission.ip,
            "user_agent": submission.user_agent,
            "referer": submission.referer,
            "indicators": list(submission.indicators),
            "email_sent": {
                "notification": dispatch.notification.to_receipt(),
                "confirmation": dispatch.confirmation.to_receipt(),
            },
            "notes": [],
            "spam_score": assessment.score,
            "is_spam": assessment.is_spam,
            "spam_reasons": list(assessment.reasons),
            "submitted_at": submission.timestamp.isoformat(),
            "created_at": now,
            "updated_at": now,
        }
        self._save(record)
        logger.info(f"Contact saved: {record['name']} ({record['email']}) as {record['id']}")
        return record["id"]

    def get(self, record_id: str) -> Dict[str, Any]:
        return self._load(record_id)

    def find_by_email(self, email: str) -> List[Dict[str, Any]]:
        """Records for an email address, newest first."""
        email = email.strip().lower()
        if self.r:
            try:
                ids = self.r.smembers(EMAIL_KEY.format(email))
            except redis.RedisError as e:
                raise PersistenceError(f"Failed to look up {email}: {e}") from e
            records = [self._load(record_id) for record_id in ids]
            return sorted(records, key=lambda r: r["created_at"], reverse=True)
        return [r for r in self._all() if r["email"] == email]

    def set_status(self, record_id: str, status: str) -> Dict[str, Any]:
        """Move a record forward along new -> read -> in_progress -> handled -> archived."""
        if status not in STATUSES:
            raise InvalidTransitionError(f"Unknown status: {status}")

        def change(record):
            if STATUSES.index(status) < STATUSES.index(record["status"]):
                raise InvalidTransitionError(f"Cannot move contact {record_id} from {record['status']} to {status}")
            record["status"] = status
            record["updated_at"] = _now().isoformat()

        record = self._update(record_id, change)
        logger.info(f"Contact {record_id} status -> {status}")
        return record

    def mark_read(self, record_id: str) -> Dict[str, Any]:
        def change(record):
            if record["status"] == "new":
                record["status"] = "read"
                record["updated_at"] = _now().isoformat()

        return self._update(record_id, change)

    def mark_spam(self, record_id: str) -> Dict[str, Any]:
        def change(record):
            record["is_spam"] = True
            record["status"] = "archived"
            record["updated_at"] = _now().isoformat()

        record = self._update(record_id, change)
        logger.info(f"Contact {record_id} marked as spam")
        return record

    def add_note(self, record_id: str, content: str, author: str = "System") -> Dict[str, Any]:
        def change(record):
            record["notes"].append({"content": content, "author": author, "created_at": _now().isoformat()})
            record["updated_at"] = _now().isoformat()

        return self._update(record_id, change)

    def recent_contacts(self, days: int = 7) -> List[Dict[str, Any]]:
        """Non-spam records created in the last ``days`` days."""
        cutoff = (_now() - timedelta(days=days)).isoformat()
        return [r for r in self._all() if r["created_at"] >= cutoff and not r["is_spam"]]

    def stats(self) -> Dict[str, int]:
        records = self._all()
        month_start = _now().replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()
        return {
            "total": len(records),
            "this_month": sum(1 for r in records if r["created_at"] >= month_start),
            "spam": sum(1 for r in records if r["is_spam"]),
            **{f"status_{status}": sum(1 for r in records if r["status"] == status) for status in STATUSES},
        }

    def clean_old_contacts(self, days: int = 365) -> int:
        """Delete archived records older than ``days`` days. Returns the count removed."""
        cutoff = (_now() - timedelta(days=days)).isoformat()
        with self._lock:
            expired = [r for r in self._all() if r["status"] == "archived" and r["created_at"] < cutoff]
            for record in expired:
                self._delete(record)
        logger.info(f"Retention sweep removed {len(expired)} archived contacts older than {days} days")
        return len(expired)

    def ping(self) -> bool:
        try:
            return bool(self.r.ping()) if self.r else True
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False
