"""
Confidential record store.

Owns the confidential records, their revealed counterparts, the pending
decryption table (request_id -> record_id) and the per-campaign encrypted
accumulators. Plaintext only enters through resolve_decryption, after the
oracle's proof has been verified.

Decryption lifecycle: created -> pending decryption -> revealed (terminal).
A rejected resolution leaves the request pending.

Redemption lifecycle: active -> redeemed, or active -> expired. Only a
revealed record can be redeemed, and only by its owner when it has one.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .ciphertext import CiphertextHandle, ConfidentialContext, EBOOL, EUINT32
from .codec import decode_cleartexts
from .config import DB_PATH, duplicate_pending_allowed, get_request_ttl
from .db import get_db, health_check, init_db
from .errors import (
    AlreadyRevealed,
    DecodeError,
    InvalidProof,
    NotFound,
    NotOwner,
    NotRevealed,
    RecordNotActive,
    RequestPending,
    UnknownRequest,
    VaultError,
)
from .events import (
    DECRYPTION_FAILED,
    DECRYPTION_REQUESTED,
    RECORD_CREATED,
    RECORD_DECRYPTED,
    RECORD_EXPIRED,
    RECORD_REDEEMED,
    NotificationBus,
    insert_notification,
)
from .oracle import DecryptionOracle
from .schema import (
    RECORD_STATUSES,
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_REDEEMED,
    CampaignAccumulator,
    ConfidentialRecord,
    Notification,
    PendingDecryptionRequest,
    RevealedRecord,
)
from ..util.logging import logger


def _now() -> datetime:
    return datetime.now()


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ConfidentialRecordStore:
    """Single store object owning all record, request and campaign state."""

    def __init__(self, oracle: DecryptionOracle, db_path: str = None,
                 context: ConfidentialContext = None, notifications: NotificationBus = None,
                 allow_duplicate_pending: bool = None):
        self.db_path = db_path or DB_PATH
        init_db(self.db_path)

        # The store only ever needs the public half of the key material
        self.context = (context or oracle.context).public_view()
        self.oracle = oracle
        self.notifications = notifications or NotificationBus(self.db_path)
        if allow_duplicate_pending is None:
            allow_duplicate_pending = duplicate_pending_allowed()
        self.allow_duplicate_pending = allow_duplicate_pending

        self._create_lock = threading.Lock()
        # Held while a request is handed to the oracle and persisted
        self._submission_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._record_locks: Dict[int, threading.RLock] = {}
        self._campaign_locks: Dict[str, threading.Lock] = {}

    def _record_lock(self, record_id: int) -> threading.RLock:
        with self._locks_guard:
            return self._record_locks.setdefault(record_id, threading.RLock())

    def _campaign_lock(self, campaign_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._campaign_locks.setdefault(campaign_name, threading.Lock())

    def _reject(self, operation: str, error: VaultError):
        logger.log_operation_rejected(operation, error.error_type, error.details)
        raise error

    # Records

    RECORD_COLUMNS = "id, encrypted_value, encrypted_flag, created_at, brand, owner, status, closed_at"

    def create_record(self, encrypted_value: CiphertextHandle, encrypted_flag: CiphertextHandle,
                      brand: str = "", owner: Optional[str] = None) -> int:
        """Store a confidential record and return its id (1, 2, 3, ...).

        brand and owner are public metadata; owner, when set, is the only
        party allowed to redeem the record.
        """
        self.context.require(encrypted_value, EUINT32)
        self.context.require(encrypted_flag, EBOOL)
        if not isinstance(brand, str):
            raise ValueError("brand must be a string")
        if owner is not None and (not isinstance(owner, str) or not owner.strip()):
            raise ValueError("owner must be a non-empty string when given")
        brand = brand.strip()
        owner = owner.strip() if owner is not None else None

        created_at = _now()
        with self._create_lock:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "INSERT INTO records (encrypted_value, encrypted_flag, created_at, brand, owner, status) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (encrypted_value.serialize(), encrypted_flag.serialize(), _ts(created_at),
                     brand, owner, STATUS_ACTIVE)
                )
                record_id = cursor.lastrowid

                # Held from before commit until record_created is published, so no
                # later event for this id can overtake it
                record_lock = self._record_lock(record_id)
                record_lock.acquire()
                try:
                    cursor.execute(
                        "INSERT INTO revealed (record_id, value, flag, revealed) VALUES (?, 0, FALSE, FALSE)",
                        (record_id,)
                    )
                    notification = insert_notification(cursor, RECORD_CREATED, record_id, created_at,
                                                       {"id": record_id, "created_at": _ts(created_at),
                                                        "brand": brand})
                    conn.commit()
                except Exception:
                    record_lock.release()
                    raise

        try:
            logger.log_record_created(record_id, _ts(created_at))
            self.notifications.publish(notification)
        finally:
            record_lock.release()
        return record_id

    def get_record(self, record_id: int) -> Optional[ConfidentialRecord]:
        """Get a confidential record by id."""
        if not isinstance(record_id, int) or record_id <= 0:
            return None

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT {self.RECORD_COLUMNS} FROM records WHERE id = ?", (record_id,))
            row = cursor.fetchone()

        return self._record_from_row(row) if row else None

    def record_exists(self, record_id: int) -> bool:
        return self.get_record(record_id) is not None

    def list_records(self, limit: int = 50, offset: int = 0, brand: Optional[str] = None,
                     owner: Optional[str] = None, status: Optional[str] = None) -> List[ConfidentialRecord]:
        """List confidential records, newest first, optionally filtered by brand, owner or status."""
        if status is not None and status not in RECORD_STATUSES:
            raise ValueError(f"Invalid record status: {status}")

        conditions, params = [], []
        if brand is not None:
            conditions.append("brand = ?")
            params.append(brand.strip())
        if owner is not None:
            conditions.append("LOWER(owner) = ?")
            params.append(owner.strip().lower())
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {self.RECORD_COLUMNS} FROM records {where}ORDER BY id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            )
            rows = cursor.fetchall()

        return [self._record_from_row(row) for row in rows]

    @staticmethod
    def _record_from_row(row) -> ConfidentialRecord:
        return ConfidentialRecord(
            id=row[0],
            encrypted_value=CiphertextHandle.deserialize(row[1]),
            encrypted_flag=CiphertextHandle.deserialize(row[2]),
            created_at=_parse_ts(row[3]),
            brand=row[4],
            owner=row[5],
            status=row[6],
            closed_at=_parse_ts(row[7])
        )

    def redeem_record(self, record_id: int, owner: Optional[str] = None) -> ConfidentialRecord:
        """Redeem a revealed, active record's points. Returns the updated record."""
        return self._close_record(record_id, STATUS_REDEEMED, owner=owner)

    def expire_record(self, record_id: int) -> ConfidentialRecord:
        """Expire an active record so its points can no longer be redeemed."""
        return self._close_record(record_id, STATUS_EXPIRED)

    def _close_record(self, record_id: int, status: str, owner: Optional[str] = None) -> ConfidentialRecord:
        operation = f"record.{status}"
        if not self.record_exists(record_id):
            self._reject(operation, NotFound(f"Record {record_id} not found", record_id=record_id))

        with self._record_lock(record_id):
            record = self.get_record(record_id)
            if record.status != STATUS_ACTIVE:
                self._reject(operation, RecordNotActive(f"Record {record_id} is already {record.status}",
                                                        record_id=record_id, status=record.status))

            if status == STATUS_REDEEMED:
                if not self.get_revealed_record(record_id).revealed:
                    self._reject(operation, NotRevealed(f"Record {record_id} has not been revealed yet",
                                                        record_id=record_id))
                if not record.is_owned_by(owner):
                    self._reject(operation, NotOwner(f"Record {record_id} belongs to another owner",
                                                     record_id=record_id))

            closed_at = _now()
            kind = RECORD_REDEEMED if status == STATUS_REDEEMED else RECORD_EXPIRED
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE records SET status = ?, closed_at = ? WHERE id = ? AND status = ?",
                    (status, _ts(closed_at), record_id, STATUS_ACTIVE)
                )
                notification = insert_notification(cursor, kind, record_id, closed_at,
                                                   {"record_id": record_id, "brand": record.brand})
                conn.commit()

            logger.log_record_closed(record_id, status, record.brand)
            self.notifications.publish(notification)
            return self.get_record(record_id)

    # Decryption lifecycle

    def request_decryption(self, record_id: int) -> str:
        """Hand a record's handles to the oracle; returns the oracle's request id.

        Returns as soon as the request is registered. The result arrives later
        through resolve_decryption.
        """
        if not self.record_exists(record_id):
            self._reject("decryption.request", NotFound(f"Record {record_id} not found", record_id=record_id))

        with self._record_lock(record_id):
            record = self.get_record(record_id)
            if self.get_revealed_record(record_id).revealed:
                self._reject("decryption.request",
                             AlreadyRevealed(f"Record {record_id} is already revealed", record_id=record_id))

            if not self.allow_duplicate_pending:
                outstanding = self._pending_request_ids(record_id)
                if outstanding:
                    self._reject("decryption.request",
                                 RequestPending(f"Record {record_id} already has a pending decryption request",
                                                record_id=record_id, request_id=outstanding[0]))

            requested_at = _now()
            with self._submission_lock:
                request_id = self.oracle.request_decryption(
                    [record.encrypted_value, record.encrypted_flag],
                    self.resolve_decryption,
                    on_failure=self.fail_decryption
                )
                with get_db(self.db_path) as conn:
                    cursor = conn.cursor()
                    cursor.execute(
                        "INSERT INTO decryption_requests (request_id, record_id, status, requested_at) "
                        "VALUES (?, ?, 'pending', ?)",
                        (request_id, record_id, _ts(requested_at))
                    )
                    notification = insert_notification(cursor, DECRYPTION_REQUESTED, record_id, requested_at,
                                                       {"record_id": record_id})
                    conn.commit()

            logger.log_decryption_requested(record_id, request_id)
            # Per-record notification order follows the lifecycle
            self.notifications.publish(notification)

        return request_id

    def resolve_decryption(self, request_id: str, cleartexts: bytes, proof: bytes) -> int:
        """Oracle callback: verify, decode and reveal. Returns the revealed record id.

        All checks run before any write. A repeated delivery for a request that
        already resolved fails with AlreadyRevealed and changes nothing.
        """
        # Wait out any submission still persisting its request row
        with self._submission_lock:
            pass

        request = self.get_request(request_id)
        if request is None or request.status == 'expired':
            self._reject("decryption.resolve",
                         UnknownRequest(f"Unknown decryption request {request_id}", request_id=request_id))

        record_id = request.record_id
        with self._record_lock(record_id):
            if self.get_revealed_record(record_id).revealed:
                self._reject("decryption.resolve",
                             AlreadyRevealed(f"Record {record_id} is already revealed",
                                             record_id=record_id, request_id=request_id))

            request = self.get_request(request_id)
            if request.status != 'pending':
                self._reject("decryption.resolve",
                             UnknownRequest(f"Decryption request {request_id} is no longer pending",
                                            request_id=request_id))

            if not self.oracle.verify_signatures(request_id, cleartexts, proof):
                self._reject("decryption.resolve",
                             InvalidProof(f"Proof rejected for request {request_id}",
                                          record_id=record_id, request_id=request_id))

            try:
                value, flag = decode_cleartexts(cleartexts)
            except DecodeError as e:
                e.details.update(record_id=record_id, request_id=request_id)
                self._reject("decryption.resolve", e)

            resolved_at = _now()
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE revealed SET value = ?, flag = ?, revealed = TRUE, revealed_at = ? "
                    "WHERE record_id = ? AND revealed = FALSE",
                    (value, flag, _ts(resolved_at), record_id)
                )
                cursor.execute(
                    "UPDATE decryption_requests SET status = 'resolved', resolved_at = ? WHERE request_id = ?",
                    (_ts(resolved_at), request_id)
                )
                # Other outstanding requests for a revealed record can never land
                cursor.execute(
                    "UPDATE decryption_requests SET status = 'superseded', resolved_at = ? "
                    "WHERE record_id = ? AND status = 'pending' AND request_id != ?",
                    (_ts(resolved_at), record_id, request_id)
                )
                notification = insert_notification(cursor, RECORD_DECRYPTED, record_id, resolved_at,
                                                   {"record_id": record_id})
                conn.commit()

            logger.log_decryption_resolved(record_id, request_id)
            self.notifications.publish(notification)

        return record_id

    def fail_decryption(self, request_id: str, reason: str) -> bool:
        """Oracle failure callback: close a request whose handles could not be decrypted.

        The record keeps its ciphertexts and can be requested again. Returns
        False if the request is unknown or no longer pending.
        """
        with self._submission_lock:
            pass

        request = self.get_request(request_id)
        if request is None or request.status != 'pending':
            return False

        record_id = request.record_id
        with self._record_lock(record_id):
            failed_at = _now()
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE decryption_requests SET status = 'failed', resolved_at = ? "
                    "WHERE request_id = ? AND status = 'pending'",
                    (_ts(failed_at), request_id)
                )
                if not cursor.rowcount:
                    return False
                notification = insert_notification(cursor, DECRYPTION_FAILED, record_id, failed_at,
                                                   {"record_id": record_id, "request_id": request_id,
                                                    "reason": reason})
                conn.commit()

            logger.log_decryption_failed(record_id, request_id, reason)
            self.notifications.publish(notification)

        return True

    def get_revealed(self, record_id: int) -> Tuple[int, bool, bool]:
        """(value, flag, revealed); zeros and False for unknown or unrevealed records."""
        return self.get_revealed_record(record_id).as_tuple()

    def get_revealed_record(self, record_id: int) -> RevealedRecord:
        if not isinstance(record_id, int) or record_id <= 0:
            return RevealedRecord(record_id=record_id)

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT value, flag, revealed, revealed_at FROM revealed WHERE record_id = ?",
                (record_id,)
            )
            row = cursor.fetchone()

        if not row or not row[2]:
            return RevealedRecord(record_id=record_id)
        return RevealedRecord(
            record_id=record_id,
            value=row[0],
            flag=bool(row[1]),
            revealed=True,
            revealed_at=_parse_ts(row[3])
        )

    def get_request(self, request_id: str) -> Optional[PendingDecryptionRequest]:
        """Look up a decryption request by its oracle-issued id."""
        if not isinstance(request_id, str) or not request_id:
            return None

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT request_id, record_id, status, requested_at, resolved_at "
                "FROM decryption_requests WHERE request_id = ?",
                (request_id,)
            )
            row = cursor.fetchone()

        return self._request_from_row(row) if row else None

    def list_pending_requests(self) -> List[PendingDecryptionRequest]:
        """List unresolved decryption requests, oldest first."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT request_id, record_id, status, requested_at, resolved_at "
                "FROM decryption_requests WHERE status = 'pending' ORDER BY requested_at ASC"
            )
            rows = cursor.fetchall()
        return [self._request_from_row(row) for row in rows]

    def _pending_request_ids(self, record_id: int) -> List[str]:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT request_id FROM decryption_requests WHERE record_id = ? AND status = 'pending'",
                (record_id,)
            )
            return [row[0] for row in cursor.fetchall()]

    @staticmethod
    def _request_from_row(row) -> PendingDecryptionRequest:
        return PendingDecryptionRequest(
            request_id=row[0],
            record_id=row[1],
            status=row[2],
            requested_at=_parse_ts(row[3]),
            resolved_at=_parse_ts(row[4])
        )

    def expire_stale_requests(self, ttl_sec: int = None) -> List[str]:
        """Mark pending requests older than ttl_sec as expired.

        Expired requests resolve as UnknownRequest and free the record for a
        new request. A ttl of 0 disables expiry.
        """
        ttl_sec = get_request_ttl() if ttl_sec is None else ttl_sec
        if ttl_sec <= 0:
            return []

        cutoff = _ts(_now() - timedelta(seconds=ttl_sec))
        expired = []
        for request in self.list_pending_requests():
            if _ts(request.requested_at) >= cutoff:
                continue
            with self._record_lock(request.record_id):
                with get_db(self.db_path) as conn:
                    cursor = conn.cursor()
                    cursor.execute(
                        "UPDATE decryption_requests SET status = 'expired' "
                        "WHERE request_id = ? AND status = 'pending'",
                        (request.request_id,)
                    )
                    if cursor.rowcount:
                        expired.append(request.request_id)
                    conn.commit()

        if expired:
            logger.log_requests_expired(expired, ttl_sec)
        return expired

    # Campaign accumulators

    def accumulate_campaign(self, campaign_name: str, encrypted_delta: CiphertextHandle):
        """Add an encrypted delta to a campaign total without decrypting anything."""
        if not isinstance(campaign_name, str) or not campaign_name.strip():
            raise ValueError("campaign name cannot be empty")
        self.context.require(encrypted_delta, EUINT32)

        with self._campaign_lock(campaign_name):
            existing = self.get_campaign(campaign_name)
            now = _now()
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                if existing is None:
                    contributions = 1
                    cursor.execute(
                        "INSERT INTO campaigns (name, encrypted_total, contributions, registered_at, updated_at) "
                        "VALUES (?, ?, 1, ?, ?)",
                        (campaign_name, encrypted_delta.serialize(), _ts(now), _ts(now))
                    )
                else:
                    contributions = existing.contributions + 1
                    total = self.context.add(existing.encrypted_total, encrypted_delta)
                    cursor.execute(
                        "UPDATE campaigns SET encrypted_total = ?, contributions = ?, updated_at = ? WHERE name = ?",
                        (total.serialize(), contributions, _ts(now), campaign_name)
                    )
                conn.commit()

        logger.log_campaign_accumulated(campaign_name, contributions, registered=existing is None)

    def get_campaign_total(self, campaign_name: str) -> CiphertextHandle:
        """Encrypted campaign total; an uninitialized handle for unknown campaigns."""
        campaign = self.get_campaign(campaign_name)
        if campaign is None:
            return CiphertextHandle.uninitialized(EUINT32)
        return campaign.encrypted_total

    def get_campaign(self, campaign_name: str) -> Optional[CampaignAccumulator]:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT name, encrypted_total, contributions, registered_at, updated_at FROM campaigns WHERE name = ?",
                (campaign_name,)
            )
            row = cursor.fetchone()

        if not row:
            return None
        return CampaignAccumulator(
            campaign_name=row[0],
            encrypted_total=CiphertextHandle.deserialize(row[1]),
            contributions=row[2],
            registered_at=_parse_ts(row[3]),
            updated_at=_parse_ts(row[4])
        )

    def list_campaigns(self) -> List[str]:
        """Campaign names in registration order."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM campaigns ORDER BY rowid ASC")
            return [row[0] for row in cursor.fetchall()]

    # Status and notifications

    def is_available(self) -> bool:
        return health_check(self.db_path)

    def get_stats(self) -> Dict[str, Any]:
        """Counts for dashboards.

        by_status counts records per redemption status. revealed_points sums
        the revealed point values per status; confidential records add nothing.
        """
        by_status = {status: 0 for status in RECORD_STATUSES}
        revealed_points = {status: 0 for status in RECORD_STATUSES}

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM records")
            records = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM revealed WHERE revealed = TRUE")
            revealed = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM decryption_requests WHERE status = 'pending'")
            pending = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM campaigns")
            campaigns = cursor.fetchone()[0]
            cursor.execute("SELECT status, COUNT(*) FROM records GROUP BY status")
            for status, count in cursor.fetchall():
                by_status[status] = count
            cursor.execute(
                "SELECT r.status, SUM(v.value) FROM records r JOIN revealed v ON v.record_id = r.id "
                "WHERE v.revealed = TRUE GROUP BY r.status"
            )
            for status, points in cursor.fetchall():
                revealed_points[status] = points or 0

        return {
            "records": records,
            "revealed": revealed,
            "pending_requests": pending,
            "campaigns": campaigns,
            "by_status": by_status,
            "revealed_points": revealed_points
        }

    def subscribe(self, callback: Callable[[Notification], None]) -> int:
        return self.notifications.subscribe(callback)

    def unsubscribe(self, token: int) -> bool:
        return self.notifications.unsubscribe(token)

    def list_notifications(self, record_id: Optional[int] = None, limit: int = 50) -> List[Notification]:
        return self.notifications.list_notifications(record_id=record_id, limit=limit)
