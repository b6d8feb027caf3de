"""Polling fallback for signaling when the realtime relay is not reachable.

Signal messages for a room are appended to a shared, size-bounded queue. A
per-room marker (the sequence number of the newest append) tells readers
whether anything changed since they last looked; readers then poll from
their own cursor, or from the start of what is retained.

Re-delivery is expected: a reader that polls without a cursor sees every
retained entry again. The negotiation layer treats duplicate offers,
answers and candidates as no-ops, so that is harmless. Only the most recent
``max_entries`` per room are kept.
"""
import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from reelgram.db_models import SignalEntry
from reelgram.signaling.messages import dump_signal, parse_signal

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 20


@dataclass(frozen=True)
class FallbackEntry:
    seq: int
    room_id: str
    message: Dict[str, Any]
    sender: Optional[str] = None
    ts: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {"seq": self.seq, "sender": self.sender, "ts": self.ts, "message": self.message}


@dataclass(frozen=True)
class FallbackBatch:
    entries: List[FallbackEntry] = field(default_factory=list)
    cursor: Optional[int] = None
    last_update: Optional[int] = None

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [e.message for e in self.entries]


class QueueStore(Protocol):
    def push(self, room_id: str, payload: str, sender: Optional[str]) -> FallbackEntry: ...

    def entries(self, room_id: str, since: Optional[int] = None) -> List[FallbackEntry]: ...

    def trim(self, room_id: str, keep: int) -> int: ...

    def last_update(self, room_id: str) -> Optional[int]: ...

    def clear(self, room_id: str) -> None: ...


class MemoryQueueStore:
    """Process-local store; shared by everything holding the same instance."""

    def __init__(self):
        self._queues: Dict[str, List[tuple]] = {}
        self._markers: Dict[str, int] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def push(self, room_id: str, payload: str, sender: Optional[str]) -> FallbackEntry:
        with self._lock:
            seq = next(self._seq)
            row = (seq, payload, sender, time.time())
            self._queues.setdefault(room_id, []).append(row)
            self._markers[room_id] = seq
        return self._entry(room_id, row)

    def entries(self, room_id: str, since: Optional[int] = None) -> List[FallbackEntry]:
        with self._lock:
            rows = list(self._queues.get(room_id, ()))
        return [self._entry(room_id, r) for r in rows if since is None or r[0] > since]

    def trim(self, room_id: str, keep: int) -> int:
        with self._lock:
            rows = self._queues.get(room_id, [])
            dropped = max(0, len(rows) - keep)
            if dropped:
                self._queues[room_id] = rows[dropped:]
            return dropped

    def last_update(self, room_id: str) -> Optional[int]:
        return self._markers.get(room_id)

    def clear(self, room_id: str) -> None:
        with self._lock:
            self._queues.pop(room_id, None)
            self._markers.pop(room_id, None)

    @staticmethod
    def _entry(room_id: str, row: tuple) -> FallbackEntry:
        seq, payload, sender, ts = row
        return FallbackEntry(seq=seq, room_id=room_id, message=json.loads(payload), sender=sender, ts=ts)


class SqlQueueStore:
    """Store persisted in the application database (``signal_entries``)."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def push(self, room_id: str, payload: str, sender: Optional[str]) -> FallbackEntry:
        with self.session_factory() as db:
            row = SignalEntry(room=room_id, sender=sender, payload=payload)
            db.add(row)
            db.commit()
            db.refresh(row)
            return self._entry(row)

    def entries(self, room_id: str, since: Optional[int] = None) -> List[FallbackEntry]:
        with self.session_factory() as db:
            q = db.query(SignalEntry).filter(SignalEntry.room == room_id)
            if since is not None:
                q = q.filter(SignalEntry.id > since)
            return [self._entry(r) for r in q.order_by(SignalEntry.id.asc()).all()]

    def trim(self, room_id: str, keep: int) -> int:
        with self.session_factory() as db:
            kept_ids = [
                row_id for (row_id,) in db.query(SignalEntry.id)
                .filter(SignalEntry.room == room_id)
                .order_by(SignalEntry.id.desc())
                .limit(keep)
                .all()
            ]
            q = db.query(SignalEntry).filter(SignalEntry.room == room_id)
            if kept_ids:
                q = q.filter(SignalEntry.id.notin_(kept_ids))
            dropped = q.delete(synchronize_session=False)
            db.commit()
            return dropped

    def last_update(self, room_id: str) -> Optional[int]:
        with self.session_factory() as db:
            return db.query(func.max(SignalEntry.id)).filter(SignalEntry.room == room_id).scalar()

    def clear(self, room_id: str) -> None:
        with self.session_factory() as db:
            db.query(SignalEntry).filter(SignalEntry.room == room_id).delete(synchronize_session=False)
            db.commit()

    @staticmethod
    def _entry(row: SignalEntry) -> FallbackEntry:
        created = row.created_at.replace(tzinfo=timezone.utc) if row.created_at else datetime.now(timezone.utc)
        return FallbackEntry(
            seq=row.id,
            room_id=row.room,
            message=json.loads(row.payload),
            sender=row.sender,
            ts=created.timestamp(),
        )


class FallbackChannel:
    def __init__(self, store: QueueStore, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.store = store
        self.max_entries = max_entries

    def append(self, room_id: str, message, sender: Optional[str] = None) -> FallbackEntry:
        """Queue a signal message for ``room_id`` and bump the room's marker.

        ``message`` may be a signal model or a plain dict; dicts are validated
        and stored exactly as given. Raises pydantic's ValidationError for
        anything that is not a signal message.
        """
        if isinstance(message, dict):
            parse_signal(message)
            payload = message
        else:
            payload = dump_signal(message)
        entry = self.store.push(room_id, json.dumps(payload), sender)
        dropped = self.store.trim(room_id, self.max_entries)
        if dropped:
            logger.debug(f"Fallback queue {room_id}: dropped {dropped} old entries")
        return entry

    def poll(self, room_id: str, since: Optional[int] = None) -> FallbackBatch:
        entries = self.store.entries(room_id, since)
        cursor = entries[-1].seq if entries else since
        return FallbackBatch(entries=entries, cursor=cursor, last_update=self.store.last_update(room_id))

    def last_update(self, room_id: str) -> Optional[int]:
        return self.store.last_update(room_id)

    def changed_since(self, room_id: str, marker: Optional[int]) -> bool:
        current = self.store.last_update(room_id)
        if current is None:
            return False
        return marker is None or current > marker

    def clear(self, room_id: str) -> None:
        self.store.clear(room_id)
