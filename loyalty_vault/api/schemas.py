"""
Request/response models for the loyalty vault HTTP API.
Ciphertexts cross the wire as opaque {kind, token} pairs; cleartexts and
proofs as hex strings.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any, Union
from datetime import datetime

from ..core.ciphertext import CiphertextHandle, KINDS


class CiphertextModel(BaseModel):
    kind: str
    token: Optional[str] = None

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        if v not in KINDS:
            raise ValueError(f'kind must be one of: {list(KINDS)}')
        return v

    def to_handle(self) -> CiphertextHandle:
        return CiphertextHandle(kind=self.kind, token=self.token)

    @classmethod
    def from_handle(cls, handle: CiphertextHandle) -> 'CiphertextModel':
        return cls(kind=handle.kind, token=handle.token)


class EncryptRequest(BaseModel):
    kind: str
    value: Union[bool, int]

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        if v not in KINDS:
            raise ValueError(f'kind must be one of: {list(KINDS)}')
        return v


class RecordCreateRequest(BaseModel):
    encrypted_value: CiphertextModel
    encrypted_flag: CiphertextModel
    brand: str = ""
    owner: Optional[str] = None

    @field_validator('brand')
    @classmethod
    def brand_length(cls, v):
        v = v.strip()
        if len(v) > 100:
            raise ValueError('brand must be at most 100 characters')
        return v

    @field_validator('owner')
    @classmethod
    def owner_must_not_be_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('owner cannot be empty')
        return v


class RecordCreateResponse(BaseModel):
    id: int
    created_at: datetime


class RecordResponse(BaseModel):
    id: int
    encrypted_value: CiphertextModel
    encrypted_flag: CiphertextModel
    created_at: datetime
    revealed: bool
    brand: str
    owner: Optional[str] = None
    status: str
    closed_at: Optional[datetime] = None


class RecordListResponse(BaseModel):
    records: List[RecordResponse]
    count: int


class RedeemRequest(BaseModel):
    owner: Optional[str] = None


class RevealedResponse(BaseModel):
    record_id: int
    value: int
    flag: bool
    revealed: bool


class DecryptionRequestResponse(BaseModel):
    request_id: str
    record_id: int


class PendingRequestResponse(BaseModel):
    request_id: str
    record_id: int
    status: str
    requested_at: datetime
    resolved_at: Optional[datetime] = None


class PendingRequestListResponse(BaseModel):
    requests: List[PendingRequestResponse]
    count: int


class OracleCallbackRequest(BaseModel):
    request_id: str
    cleartexts: str  # hex
    proof: str  # hex

    @field_validator('request_id')
    @classmethod
    def request_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('request_id cannot be empty')
        return v

    @field_validator('cleartexts', 'proof')
    @classmethod
    def must_be_hex(cls, v):
        value = v[2:] if v.startswith('0x') else v
        try:
            bytes.fromhex(value)
        except ValueError:
            raise ValueError('must be a hex string')
        return value


class OracleFulfilResponse(BaseModel):
    delivered: int
    remaining: int


class CampaignAccumulateRequest(BaseModel):
    encrypted_delta: CiphertextModel


class CampaignResponse(BaseModel):
    campaign_name: str
    encrypted_total: CiphertextModel
    initialized: bool
    contributions: int = 0


class CampaignListResponse(BaseModel):
    campaigns: List[str]


class StatsResponse(BaseModel):
    records: int
    revealed: int
    pending_requests: int
    campaigns: int
    by_status: Dict[str, int]
    revealed_points: Dict[str, int]


class NotificationResponse(BaseModel):
    id: int
    kind: str
    record_id: int
    ts: datetime
    payload: Dict[str, Any]


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    count: int


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    oracle_running: bool
    record_count: int


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    timestamp: datetime = None
    details: Optional[Dict[str, Any]] = None

    def __init__(self, **data):
        super().__init__(timestamp=datetime.now(), **data)
