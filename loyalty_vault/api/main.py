"""
HTTP API for the confidential loyalty record store and its decryption oracle.
"""

import threading

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional

from .schemas import (
    CiphertextModel,
    EncryptRequest,
    RecordCreateRequest,
    RecordCreateResponse,
    RecordResponse,
    RecordListResponse,
    RedeemRequest,
    RevealedResponse,
    DecryptionRequestResponse,
    PendingRequestResponse,
    PendingRequestListResponse,
    OracleCallbackRequest,
    OracleFulfilResponse,
    CampaignAccumulateRequest,
    CampaignResponse,
    CampaignListResponse,
    StatsResponse,
    NotificationResponse,
    NotificationListResponse,
    HealthResponse,
    ErrorResponse,
)
from ..core.ciphertext import EUINT32
from ..core.config import VERSION, NOTIFICATION_LIMIT_MAX, debug_enabled
from ..core.errors import (
    AlreadyRevealed,
    DecodeError,
    DecryptionFailed,
    InvalidCiphertext,
    InvalidProof,
    NotFound,
    NotOwner,
    NotRevealed,
    RecordNotActive,
    RequestPending,
    UnknownRequest,
    VaultError,
)
from ..core.runtime import VaultRuntime, build_runtime
from ..core.schema import RECORD_STATUSES
from ..util.logging import logger

ERROR_STATUS = {
    NotFound: 404,
    UnknownRequest: 404,
    AlreadyRevealed: 409,
    RequestPending: 409,
    InvalidProof: 403,
    DecodeError: 422,
    InvalidCiphertext: 400,
    NotRevealed: 409,
    RecordNotActive: 409,
    NotOwner: 403,
    DecryptionFailed: 422,
}

_runtime: Optional[VaultRuntime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> VaultRuntime:
    """Build the default runtime on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime()
        return _runtime


# Initialize the FastAPI application
app = FastAPI(
    title="Loyalty Vault API",
    version=VERSION,
    description="Confidential loyalty records with oracle-based decryption",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

# Add CORS middleware to allow frontend connections
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    """Surface store errors as rejected actions carrying the error kind."""
    status_code = ERROR_STATUS.get(type(exc), 400)
    body = ErrorResponse(error_type=exc.error_type, message=exc.message, details=exc.details or None)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.on_event("shutdown")
def shutdown_runtime():
    if _runtime is not None:
        logger.info("Stopping decryption oracle on API shutdown")
        _runtime.shutdown()


def _record_response(runtime: VaultRuntime, record) -> RecordResponse:
    return RecordResponse(
        id=record.id,
        encrypted_value=CiphertextModel.from_handle(record.encrypted_value),
        encrypted_flag=CiphertextModel.from_handle(record.encrypted_flag),
        created_at=record.created_at,
        revealed=runtime.store.get_revealed(record.id)[2],
        brand=record.brand,
        owner=record.owner,
        status=record.status,
        closed_at=record.closed_at
    )


def _revealed_response(runtime: VaultRuntime, record_id: int) -> RevealedResponse:
    value, flag, revealed = runtime.store.get_revealed(record_id)
    return RevealedResponse(record_id=record_id, value=value, flag=flag, revealed=revealed)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(runtime: VaultRuntime = Depends(get_runtime)):
    """Check system health."""
    db_health = runtime.store.is_available()
    stats = runtime.store.get_stats() if db_health else {"records": 0}

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        oracle_running=runtime.oracle.running,
        record_count=stats["records"]
    )


@app.post("/ciphertexts", response_model=CiphertextModel)
def encrypt_endpoint(request: EncryptRequest, runtime: VaultRuntime = Depends(get_runtime)):
    """Client-side encryption helper under the deployment's public key."""
    public = runtime.context.public_view()
    if request.kind == EUINT32:
        handle = public.encrypt_uint32(request.value)
    else:
        handle = public.encrypt_bool(bool(request.value))
    return CiphertextModel.from_handle(handle)


@app.post("/records", response_model=RecordCreateResponse)
def create_record_endpoint(request: RecordCreateRequest, runtime: VaultRuntime = Depends(get_runtime)):
    """Store a confidential record."""
    record_id = runtime.store.create_record(
        request.encrypted_value.to_handle(),
        request.encrypted_flag.to_handle(),
        brand=request.brand,
        owner=request.owner
    )
    record = runtime.store.get_record(record_id)
    return RecordCreateResponse(id=record.id, created_at=record.created_at)


# Define /records list BEFORE /records/{record_id}
@app.get("/records", response_model=RecordListResponse)
def list_records_endpoint(
    limit: int = Query(50, description="Maximum number of records to return", ge=1, le=500),
    offset: int = Query(0, ge=0),
    brand: Optional[str] = Query(None, description="Filter by brand"),
    owner: Optional[str] = Query(None, description="Filter by owner"),
    status: Optional[str] = Query(None, description="Filter by status: active, redeemed or expired"),
    runtime: VaultRuntime = Depends(get_runtime)
):
    """List confidential records, newest first."""
    if status is not None and status not in RECORD_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of: {RECORD_STATUSES}")

    records = [
        _record_response(runtime, r)
        for r in runtime.store.list_records(limit=limit, offset=offset, brand=brand, owner=owner, status=status)
    ]
    return RecordListResponse(records=records, count=len(records))


@app.get("/records/{record_id}", response_model=RecordResponse)
def get_record_endpoint(record_id: int, runtime: VaultRuntime = Depends(get_runtime)):
    record = runtime.store.get_record(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return _record_response(runtime, record)


@app.post("/records/{record_id}/decrypt", response_model=DecryptionRequestResponse)
def request_decryption_endpoint(record_id: int, runtime: VaultRuntime = Depends(get_runtime)):
    """Ask the oracle to decrypt a record. Returns before the result arrives."""
    request_id = runtime.store.request_decryption(record_id)
    return DecryptionRequestResponse(request_id=request_id, record_id=record_id)


@app.post("/records/{record_id}/redeem", response_model=RecordResponse)
def redeem_record_endpoint(record_id: int, request: Optional[RedeemRequest] = None,
                           runtime: VaultRuntime = Depends(get_runtime)):
    """Redeem a revealed record's points."""
    owner = request.owner if request else None
    return _record_response(runtime, runtime.store.redeem_record(record_id, owner=owner))


@app.post("/records/{record_id}/expire", response_model=RecordResponse)
def expire_record_endpoint(record_id: int, runtime: VaultRuntime = Depends(get_runtime)):
    return _record_response(runtime, runtime.store.expire_record(record_id))


@app.get("/records/{record_id}/revealed", response_model=RevealedResponse)
def get_revealed_endpoint(record_id: int, runtime: VaultRuntime = Depends(get_runtime)):
    return _revealed_response(runtime, record_id)


@app.get("/requests/pending", response_model=PendingRequestListResponse)
def list_pending_requests_endpoint(runtime: VaultRuntime = Depends(get_runtime)):
    requests = [PendingRequestResponse(**r.to_dict()) for r in runtime.store.list_pending_requests()]
    return PendingRequestListResponse(requests=requests, count=len(requests))


@app.post("/oracle/callback", response_model=RevealedResponse)
def oracle_callback_endpoint(request: OracleCallbackRequest, runtime: VaultRuntime = Depends(get_runtime)):
    """Deliver a decryption result from the oracle transport."""
    record_id = runtime.store.resolve_decryption(
        request.request_id,
        bytes.fromhex(request.cleartexts),
        bytes.fromhex(request.proof)
    )
    return _revealed_response(runtime, record_id)


@app.post("/oracle/fulfil", response_model=OracleFulfilResponse)
def oracle_fulfil_endpoint(runtime: VaultRuntime = Depends(get_runtime)):
    """Drain the in-process oracle queue (manual oracle mode)."""
    delivered = runtime.oracle.fulfil_pending()
    return OracleFulfilResponse(delivered=delivered, remaining=len(runtime.oracle.pending_request_ids()))


@app.post("/campaigns/{campaign_name}/accumulate", response_model=CampaignResponse)
def accumulate_campaign_endpoint(campaign_name: str, request: CampaignAccumulateRequest,
                                 runtime: VaultRuntime = Depends(get_runtime)):
    """Add an encrypted delta to a campaign total."""
    if not campaign_name.strip():
        raise HTTPException(status_code=400, detail="Campaign name cannot be empty")
    runtime.store.accumulate_campaign(campaign_name, request.encrypted_delta.to_handle())
    return get_campaign_endpoint(campaign_name, runtime)


@app.get("/campaigns", response_model=CampaignListResponse)
def list_campaigns_endpoint(runtime: VaultRuntime = Depends(get_runtime)):
    return CampaignListResponse(campaigns=runtime.store.list_campaigns())


@app.get("/campaigns/{campaign_name}", response_model=CampaignResponse)
def get_campaign_endpoint(campaign_name: str, runtime: VaultRuntime = Depends(get_runtime)):
    """Encrypted campaign total; uninitialized for campaigns never accumulated."""
    campaign = runtime.store.get_campaign(campaign_name)
    if campaign is None:
        total = runtime.store.get_campaign_total(campaign_name)
        return CampaignResponse(
            campaign_name=campaign_name,
            encrypted_total=CiphertextModel.from_handle(total),
            initialized=False
        )
    return CampaignResponse(
        campaign_name=campaign.campaign_name,
        encrypted_total=CiphertextModel.from_handle(campaign.encrypted_total),
        initialized=True,
        contributions=campaign.contributions
    )


@app.get("/stats", response_model=StatsResponse)
def stats_endpoint(runtime: VaultRuntime = Depends(get_runtime)):
    return StatsResponse(**runtime.store.get_stats())


@app.get("/notifications", response_model=NotificationListResponse)
def list_notifications_endpoint(
    record_id: Optional[int] = Query(None, description="Filter by record id"),
    limit: int = Query(50, description="Maximum number of notifications to return", ge=1, le=NOTIFICATION_LIMIT_MAX),
    runtime: VaultRuntime = Depends(get_runtime)
):
    """Notification stream, oldest first."""
    notifications = [
        NotificationResponse(id=n.id, kind=n.kind, record_id=n.record_id, ts=n.ts, payload=n.payload)
        for n in runtime.store.list_notifications(record_id=record_id, limit=limit)
    ]
    return NotificationListResponse(notifications=notifications, count=len(notifications))


