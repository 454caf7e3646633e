"""
Typed records owned by the confidential record store.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from .ciphertext import CiphertextHandle


STATUS_ACTIVE = "active"
STATUS_REDEEMED = "redeemed"
STATUS_EXPIRED = "expired"
RECORD_STATUSES = [STATUS_ACTIVE, STATUS_REDEEMED, STATUS_EXPIRED]


@dataclass(frozen=True)
class ConfidentialRecord:
    id: int
    encrypted_value: CiphertextHandle
    encrypted_flag: CiphertextHandle
    created_at: datetime
    brand: str = ""
    owner: Optional[str] = None
    status: str = STATUS_ACTIVE
    closed_at: Optional[datetime] = None  # when the record was redeemed or expired

    def is_owned_by(self, owner: Optional[str]) -> bool:
        """Owners compare case-insensitively; unowned records accept anyone."""
        if self.owner is None:
            return True
        return owner is not None and owner.strip().lower() == self.owner.lower()


@dataclass(frozen=True)
class RevealedRecord:
    record_id: int
    value: int = 0
    flag: bool = False
    revealed: bool = False
    revealed_at: Optional[datetime] = None

    def as_tuple(self):
        return self.value, self.flag, self.revealed


@dataclass(frozen=True)
class PendingDecryptionRequest:
    request_id: str
    record_id: int
    status: str  # pending, resolved, superseded, failed, expired
    requested_at: datetime
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['requested_at'] = self.requested_at.isoformat()
        data['resolved_at'] = self.resolved_at.isoformat() if self.resolved_at else None
        return data


@dataclass(frozen=True)
class CampaignAccumulator:
    campaign_name: str
    encrypted_total: CiphertextHandle
    contributions: int
    registered_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Notification:
    id: int
    kind: str  # see events.NOTIFICATION_KINDS
    record_id: int
    ts: datetime
    payload: Dict[str, Any]
