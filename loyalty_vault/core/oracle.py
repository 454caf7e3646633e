"""
Decryption oracle.

Accepts (euint32, ebool) handle pairs together with a one-shot resolution
callback, decrypts them off the caller's control flow, and delivers
(request_id, cleartexts, proof) to the callback exactly once. The proof is an
HMAC-SHA256 over request_id || cleartexts under the oracle's signing key;
verify_signatures is the check the store runs before accepting a result.
"""

import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .ciphertext import CiphertextHandle, ConfidentialContext, EBOOL, EUINT32
from .codec import encode_cleartexts
from .config import ORACLE_POLL_INTERVAL_SEC, get_oracle_signing_key
from .errors import DecryptionFailed, InvalidCiphertext, VaultError
from ..util.logging import logger

ResolutionCallback = Callable[[str, bytes, bytes], None]
FailureCallback = Callable[[str, str], None]

REQUEST_KINDS = (EUINT32, EBOOL)


@dataclass
class OracleJob:
    request_id: str
    handles: List[CiphertextHandle]
    callback: ResolutionCallback
    submitted_at: datetime
    on_failure: Optional[FailureCallback] = None


class DecryptionOracle:
    """In-process decryption oracle with optional background worker."""

    def __init__(self, context: ConfidentialContext, signing_key: bytes = None,
                 poll_interval: float = None):
        if not context.can_decrypt:
            raise ValueError("Decryption oracle requires a context with a private key")

        self.context = context
        self._signing_key = signing_key or get_oracle_signing_key()
        self.poll_interval = poll_interval or ORACLE_POLL_INTERVAL_SEC
        self._jobs: "OrderedDict[str, OracleJob]" = OrderedDict()
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def request_decryption(self, handles: Sequence[CiphertextHandle], callback: ResolutionCallback,
                           on_failure: FailureCallback = None) -> str:
        """Queue handles for decryption and return the oracle-issued request id.

        on_failure(request_id, reason) is invoked instead of callback when the
        handles cannot be decrypted into a (uint32, bool) pair.
        """
        if not callable(callback):
            raise ValueError(f"Resolution callback must be callable: {callback}")
        if on_failure is not None and not callable(on_failure):
            raise ValueError(f"Failure callback must be callable: {on_failure}")

        handles = list(handles)
        if len(handles) != len(REQUEST_KINDS):
            raise InvalidCiphertext(f"Decryption requests take exactly {REQUEST_KINDS} handles")
        for handle, kind in zip(handles, REQUEST_KINDS):
            self.context.require(handle, kind)

        request_id = uuid.uuid4().hex
        with self._lock:
            self._jobs[request_id] = OracleJob(
                request_id=request_id,
                handles=handles,
                callback=callback,
                submitted_at=datetime.now(),
                on_failure=on_failure
            )

        self._wakeup.set()
        return request_id

    def pending_request_ids(self) -> List[str]:
        """Request ids submitted but not yet delivered."""
        with self._lock:
            return list(self._jobs.keys())

    def fulfil(self, request_id: str) -> bool:
        """Decrypt one queued request and deliver it to its callback.

        Returns False if the request is not queued. The job is removed before
        delivery, so a callback is never invoked twice by this oracle; errors
        raised by the callback propagate to the caller. A job that cannot be
        decrypted is reported to its failure callback and raises
        DecryptionFailed.
        """
        with self._lock:
            job = self._jobs.pop(request_id, None)
        if job is None:
            return False

        start_time = time.monotonic()
        try:
            value, flag = (self.context.decrypt(handle) for handle in job.handles)
            cleartexts = encode_cleartexts(value, flag)
        except (VaultError, ValueError, OverflowError) as e:
            # The reason is the exception type only; messages may carry plaintext
            reason = type(e).__name__
            logger.log_oracle_fulfilment(request_id, start_time, time.monotonic(), "failed",
                                         {"reason": reason})
            if job.on_failure is not None:
                job.on_failure(request_id, reason)
            raise DecryptionFailed(f"Could not decrypt request {request_id}",
                                   request_id=request_id, reason=reason) from e

        proof = self.sign(request_id, cleartexts)

        try:
            job.callback(request_id, cleartexts, proof)
        except VaultError as e:
            logger.log_oracle_fulfilment(request_id, start_time, time.monotonic(), "failed",
                                         {"error_type": e.error_type})
            raise

        logger.log_oracle_fulfilment(request_id, start_time, time.monotonic())
        return True

    def fulfil_pending(self) -> int:
        """Deliver every queued request; returns how many were delivered successfully."""
        delivered = 0
        for request_id in self.pending_request_ids():
            try:
                if self.fulfil(request_id):
                    delivered += 1
            except VaultError as e:
                logger.warning(f"Oracle delivery rejected for request {request_id}: {e.error_type}")
            except Exception as e:
                # One broken job must not hold up the rest of the queue
                logger.error(f"Oracle delivery failed for request {request_id}: {type(e).__name__}")
        return delivered

    def sign(self, request_id: str, cleartexts: bytes) -> bytes:
        """Produce the authenticity proof for a decryption result."""
        mac = hmac.HMAC(self._signing_key, hashes.SHA256())
        mac.update(request_id.encode())
        mac.update(cleartexts)
        return mac.finalize()

    def verify_signatures(self, request_id: str, cleartexts: bytes, proof: bytes) -> bool:
        """Check a proof against (request_id, cleartexts) in constant time."""
        if not isinstance(proof, (bytes, bytearray)) or not isinstance(cleartexts, (bytes, bytearray)):
            return False
        mac = hmac.HMAC(self._signing_key, hashes.SHA256())
        mac.update(str(request_id).encode())
        mac.update(bytes(cleartexts))
        try:
            mac.verify(bytes(proof))
        except InvalidSignature:
            return False
        return True

    # Background worker

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start delivering queued requests from a background thread."""
        if self.running:
            raise RuntimeError("Decryption oracle already running")

        self._shutdown.clear()
        self._thread = threading.Thread(target=self._run, name="decryption-oracle", daemon=True)
        self._thread.start()
        logger.info("Decryption oracle worker started")

    def stop(self, timeout: float = 5.0):
        """Stop the background worker gracefully."""
        if not self.running:
            return
        self._shutdown.set()
        self._wakeup.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Decryption oracle worker stopped")

    def _run(self):
        while not self._shutdown.is_set():
            self._wakeup.wait(self.poll_interval)
            self._wakeup.clear()
            if self._shutdown.is_set():
                break
            try:
                self.fulfil_pending()
            except Exception as e:
                # Error isolation - log error but keep the worker alive
                logger.error(f"Decryption oracle cycle failed: {e}")
