"""
Confidential-computation context backed by python-paillier.

Ciphertexts only ever leave this module as opaque CiphertextHandle tokens.
The store holds a public-only context (add, initialisation checks); the
private key lives with the decryption oracle.
"""

import base64
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from phe import paillier

from .config import KEYS_PATH, PAILLIER_KEY_BITS
from .errors import InvalidCiphertext

EUINT32 = "euint32"
EBOOL = "ebool"
KINDS = (EUINT32, EBOOL)

UINT32_MODULUS = 2 ** 32


@dataclass(frozen=True)
class CiphertextHandle:
    """Opaque reference to an encrypted uint32 or bool."""
    kind: str
    token: Optional[str] = None

    @classmethod
    def uninitialized(cls, kind: str = EUINT32) -> 'CiphertextHandle':
        if kind not in KINDS:
            raise InvalidCiphertext(f"Unknown ciphertext kind: {kind}")
        return cls(kind=kind, token=None)

    def serialize(self) -> str:
        """Serialize to a single string for storage or transport."""
        return json.dumps({"kind": self.kind, "token": self.token})

    @classmethod
    def deserialize(cls, data: str) -> 'CiphertextHandle':
        try:
            raw = json.loads(data)
            kind, token = raw["kind"], raw["token"]
        except (TypeError, ValueError, KeyError) as e:
            raise InvalidCiphertext(f"Malformed ciphertext handle: {e}")
        if kind not in KINDS:
            raise InvalidCiphertext(f"Unknown ciphertext kind: {kind}")
        if token is not None and not isinstance(token, str):
            raise InvalidCiphertext("Ciphertext token must be a string")
        return cls(kind=kind, token=token)

    def __repr__(self) -> str:
        if self.token is None:
            return f"CiphertextHandle({self.kind}, uninitialized)"
        digest = hashlib.sha256(self.token.encode()).hexdigest()[:12]
        return f"CiphertextHandle({self.kind}, {digest})"


def _key_fingerprint(public_key: paillier.PaillierPublicKey) -> str:
    return hashlib.sha256(str(public_key.n).encode()).hexdigest()[:16]


class ConfidentialContext:
    """Paillier key material plus the operations allowed on handles."""

    def __init__(self, public_key: paillier.PaillierPublicKey,
                 private_key: Optional[paillier.PaillierPrivateKey] = None):
        self.public_key = public_key
        self.private_key = private_key
        self.fingerprint = _key_fingerprint(public_key)

    @classmethod
    def generate(cls, bits: int = None) -> 'ConfidentialContext':
        """Generate a fresh key pair."""
        public_key, private_key = paillier.generate_paillier_keypair(n_length=int(bits or PAILLIER_KEY_BITS))
        return cls(public_key, private_key)

    @classmethod
    def load_or_create(cls, path: str = None, bits: int = None) -> 'ConfidentialContext':
        """Load key material from a JSON file, generating and saving it on first use."""
        key_path = Path(path or KEYS_PATH)
        if key_path.exists():
            return cls.from_dict(json.loads(key_path.read_text()))

        context = cls.generate(bits)
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_text(json.dumps(context.to_dict()))
        return context

    def to_dict(self, include_private: bool = True) -> Dict[str, Any]:
        """Convert key material to a dictionary for storage."""
        data = {"n": str(self.public_key.n)}
        if include_private and self.private_key is not None:
            data["p"] = str(self.private_key.p)
            data["q"] = str(self.private_key.q)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfidentialContext':
        public_key = paillier.PaillierPublicKey(int(data["n"]))
        private_key = None
        if "p" in data and "q" in data:
            private_key = paillier.PaillierPrivateKey(public_key, int(data["p"]), int(data["q"]))
        return cls(public_key, private_key)

    def public_view(self) -> 'ConfidentialContext':
        """Same public key, no decryption capability."""
        return ConfidentialContext(self.public_key)

    @property
    def can_decrypt(self) -> bool:
        return self.private_key is not None

    # Client-side encryption

    def encrypt_uint32(self, value: int) -> CiphertextHandle:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidCiphertext(f"uint32 plaintext must be an int, got {type(value).__name__}")
        if not 0 <= value < UINT32_MODULUS:
            raise InvalidCiphertext(f"uint32 plaintext out of range: {value}")
        return self._wrap(EUINT32, self.public_key.encrypt(value))

    def encrypt_bool(self, flag: bool) -> CiphertextHandle:
        return self._wrap(EBOOL, self.public_key.encrypt(1 if flag else 0))

    # Operations on handles

    def is_initialized(self, handle: CiphertextHandle) -> bool:
        return handle is not None and handle.token is not None

    def require(self, handle: CiphertextHandle, kind: str) -> CiphertextHandle:
        """Reject uninitialised, foreign or wrongly typed handles."""
        if not isinstance(handle, CiphertextHandle):
            raise InvalidCiphertext(f"Expected a ciphertext handle, got {type(handle).__name__}")
        if handle.kind != kind:
            raise InvalidCiphertext(f"Expected {kind} handle, got {handle.kind}")
        if not self.is_initialized(handle):
            raise InvalidCiphertext(f"{kind} handle is not initialized")
        self._unwrap(handle)
        return handle

    def add(self, a: CiphertextHandle, b: CiphertextHandle) -> CiphertextHandle:
        """Confidential addition of two euint32 handles."""
        self.require(a, EUINT32)
        self.require(b, EUINT32)
        return self._wrap(EUINT32, self._unwrap(a) + self._unwrap(b))

    def decrypt(self, handle: CiphertextHandle) -> Union[int, bool]:
        """Decrypt a handle. Only available to a context holding the private key."""
        if not self.can_decrypt:
            raise PermissionError("This context holds no private key")
        if not isinstance(handle, CiphertextHandle):
            raise InvalidCiphertext(f"Expected a ciphertext handle, got {type(handle).__name__}")
        self.require(handle, handle.kind)
        plain = self.private_key.decrypt(self._unwrap(handle))
        if handle.kind == EBOOL:
            return plain != 0
        # euint32 arithmetic wraps
        return plain % UINT32_MODULUS

    def _wrap(self, kind: str, number: paillier.EncryptedNumber) -> CiphertextHandle:
        body = {"k": self.fingerprint, "c": str(number.ciphertext()), "e": int(number.exponent)}
        token = base64.urlsafe_b64encode(json.dumps(body).encode()).decode()
        return CiphertextHandle(kind=kind, token=token)

    def _unwrap(self, handle: CiphertextHandle) -> paillier.EncryptedNumber:
        try:
            body = json.loads(base64.urlsafe_b64decode(handle.token.encode()))
            key_id, ciphertext, exponent = body["k"], int(body["c"]), int(body.get("e", 0))
        except (TypeError, ValueError, KeyError) as e:
            raise InvalidCiphertext(f"Malformed ciphertext token: {e}")
        if key_id != self.fingerprint:
            raise InvalidCiphertext("Ciphertext was produced under a different key")
        # uint32 and bool plaintexts are integers; a non-zero exponent encodes a fraction
        if exponent != 0:
            raise InvalidCiphertext(f"Ciphertext is not an integer encoding (exponent {exponent})")
        if not 0 < ciphertext < self.public_key.nsquare:
            raise InvalidCiphertext("Ciphertext is out of range for this key")
        return paillier.EncryptedNumber(self.public_key, ciphertext, exponent)
