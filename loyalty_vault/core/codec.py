"""
Cleartext payload codec for decryption results.

Layout: two 32-byte big-endian words, the uint32 value then the bool flag
(the ABI encoding of (uint32, bool)).
"""

from typing import Tuple

from .errors import DecodeError

WORD_SIZE = 32
PAYLOAD_SIZE = 2 * WORD_SIZE
UINT32_MAX = 2 ** 32 - 1


def encode_cleartexts(value: int, flag: bool) -> bytes:
    """Encode a decrypted (value, flag) pair."""
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= UINT32_MAX:
        raise ValueError(f"value must be a uint32, got {value!r}")
    return value.to_bytes(WORD_SIZE, "big") + (1 if flag else 0).to_bytes(WORD_SIZE, "big")


def decode_cleartexts(payload: bytes) -> Tuple[int, bool]:
    """Decode a payload into (value, flag), rejecting anything non-canonical."""
    if not isinstance(payload, (bytes, bytearray)):
        raise DecodeError(f"Cleartext payload must be bytes, got {type(payload).__name__}")
    if len(payload) != PAYLOAD_SIZE:
        raise DecodeError(f"Cleartext payload must be {PAYLOAD_SIZE} bytes, got {len(payload)}")

    value = int.from_bytes(payload[:WORD_SIZE], "big")
    flag_word = int.from_bytes(payload[WORD_SIZE:], "big")

    if value > UINT32_MAX:
        raise DecodeError(f"Decoded value does not fit in uint32: {value}")
    if flag_word not in (0, 1):
        raise DecodeError(f"Decoded flag is not a bool: {flag_word}")

    return value, flag_word == 1
