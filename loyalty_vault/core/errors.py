"""
Error taxonomy for the confidential record store.
Every error is raised synchronously to the immediate caller; none is retried here.
"""


class VaultError(Exception):
    """Base class for store and oracle failures."""
    error_type = "VAULT_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(VaultError):
    """Unknown record id."""
    error_type = "NOT_FOUND"


class AlreadyRevealed(VaultError):
    """Re-request or re-resolve on a record that is already revealed."""
    error_type = "ALREADY_REVEALED"


class UnknownRequest(VaultError):
    """Resolution for a request id that was never registered (or has expired)."""
    error_type = "UNKNOWN_REQUEST"


class InvalidProof(VaultError):
    """Oracle signature did not verify against the request and cleartexts."""
    error_type = "INVALID_PROOF"


class DecodeError(VaultError):
    """Malformed cleartext payload."""
    error_type = "DECODE_ERROR"


class RequestPending(VaultError):
    """A decryption request for this record is still outstanding."""
    error_type = "REQUEST_PENDING"


class DecryptionFailed(VaultError):
    """The oracle could not decrypt or encode a queued request."""
    error_type = "DECRYPTION_FAILED"


class NotRevealed(VaultError):
    """Redemption of a record whose points are still confidential."""
    error_type = "NOT_REVEALED"


class RecordNotActive(VaultError):
    """Status transition on a record that is already redeemed or expired."""
    error_type = "RECORD_NOT_ACTIVE"


class NotOwner(VaultError):
    """Redemption attempted by someone other than the record owner."""
    error_type = "NOT_OWNER"


class InvalidCiphertext(VaultError, ValueError):
    """Ciphertext handle is uninitialised, malformed or of the wrong kind."""
    error_type = "INVALID_CIPHERTEXT"
