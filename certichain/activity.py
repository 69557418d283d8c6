import abc
import threading
import uuid
from typing import List, Optional

from certichain.database import ActivityLogEntry, database_errors, db
from certichain.models import ActivityEntry, Actor, utcnow_iso
from certichain.storage import JsonDocumentStore

TYPE_CERTIFICATE = "certificate"
TYPE_INSTITUTION = "institution"
TYPE_VERIFICATION = "verification"
TYPE_SYSTEM = "system"


class ActivityLog(abc.ABC):
    """Audit trail of issuance, revocation and verification events."""

    def record(self, actor: Actor, action: str, details: str, type: str,
               unique_id: Optional[str] = None, outcome: Optional[str] = None) -> ActivityEntry:
        entry = ActivityEntry(
            id=str(uuid.uuid4()),
            user_id=actor.id,
            user_name=actor.name,
            action=action,
            details=details,
            type=type,
            timestamp=utcnow_iso(),
            unique_id=unique_id,
            outcome=outcome,
        )
        self._write(entry)
        return entry

    @abc.abstractmethod
    def _write(self, entry: ActivityEntry) -> None:
        pass

    @abc.abstractmethod
    def recent(self, limit: int = 10) -> List[ActivityEntry]:
        """Newest entries first."""


class LocalActivityLog(ActivityLog):
    def __init__(self, store: Optional[JsonDocumentStore] = None) -> None:
        self._store = store if store is not None else JsonDocumentStore()
        self._lock = threading.Lock()

    def _write(self, entry):
        with self._lock:
            self._store.save([entry.to_dict()] + self._store.records)

    def recent(self, limit=10):
        return [ActivityEntry(**r) for r in self._store.records[:limit]]


class DatabaseActivityLog(ActivityLog):
    def _write(self, entry):
        with database_errors("activity log write"):
            db.session.add(ActivityLogEntry(
                id=entry.id,
                user_id=entry.user_id,
                user_name=entry.user_name,
                action=entry.action,
                details=entry.details,
                type=entry.type,
                unique_id=entry.unique_id,
                outcome=entry.outcome,
            ))
            db.session.commit()

    def recent(self, limit=10):
        with database_errors("activity log read"):
            rows = (ActivityLogEntry.query
                    .order_by(ActivityLogEntry.timestamp.desc())
                    .limit(limit)
                    .all())
        return [row.to_entry() for row in rows]
