"""
Notification stream for the record lifecycle: creation, decryption requests and
results, redemption and expiry.
Notifications are persisted with the mutation that causes them and then
fanned out to in-process subscribers.
"""

import json
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .db import get_db
from .schema import Notification
from ..util.logging import logger

RECORD_CREATED = "record_created"
DECRYPTION_REQUESTED = "decryption_requested"
RECORD_DECRYPTED = "record_decrypted"
DECRYPTION_FAILED = "decryption_failed"
RECORD_REDEEMED = "record_redeemed"
RECORD_EXPIRED = "record_expired"
NOTIFICATION_KINDS = [RECORD_CREATED, DECRYPTION_REQUESTED, RECORD_DECRYPTED, DECRYPTION_FAILED,
                      RECORD_REDEEMED, RECORD_EXPIRED]


def insert_notification(cursor: sqlite3.Cursor, kind: str, record_id: int, ts: datetime,
                        payload: Dict = None) -> Notification:
    """Write a notification inside the caller's transaction."""
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"Invalid notification kind: {kind}")
    payload = payload or {}
    cursor.execute(
        "INSERT INTO notifications (kind, record_id, ts, payload) VALUES (?, ?, ?, ?)",
        (kind, record_id, ts.isoformat(), json.dumps(payload))
    )
    return Notification(id=cursor.lastrowid, kind=kind, record_id=record_id, ts=ts, payload=payload)


class NotificationBus:
    """Fan-out of committed notifications to subscribers."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        self._subscribers: Dict[int, Callable[[Notification], None]] = {}
        self._next_token = 1
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Notification], None]) -> int:
        """Register a subscriber and return a token for unsubscribe."""
        if not callable(callback):
            raise ValueError(f"Subscriber must be callable: {callback}")
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, notification: Notification):
        """Deliver a committed notification to every subscriber."""
        with self._lock:
            subscribers = list(self._subscribers.values())

        for callback in subscribers:
            try:
                callback(notification)
            except Exception as e:
                # Subscriber isolation - a failing observer must not affect the store
                logger.error(f"Notification subscriber failed for {notification.kind} "
                             f"(record {notification.record_id}): {e}")

    def list_notifications(self, record_id: Optional[int] = None, limit: int = 50) -> List[Notification]:
        """List notifications oldest first, optionally for one record."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            if record_id is not None:
                cursor.execute(
                    "SELECT id, kind, record_id, ts, payload FROM notifications WHERE record_id = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (record_id, limit)
                )
            else:
                cursor.execute(
                    "SELECT id, kind, record_id, ts, payload FROM notifications ORDER BY id DESC LIMIT ?",
                    (limit,)
                )
            rows = cursor.fetchall()

        return [
            Notification(
                id=row[0],
                kind=row[1],
                record_id=row[2],
                ts=datetime.fromisoformat(row[3]),
                payload=json.loads(row[4]) if row[4] else {}
            )
            for row in reversed(rows)
        ]
