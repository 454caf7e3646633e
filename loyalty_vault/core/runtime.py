"""
Deployment wiring: one confidential context, one oracle and one store.
"""

from dataclasses import dataclass
from typing import Optional

from .ciphertext import ConfidentialContext
from .config import DB_PATH, KEYS_PATH, PAILLIER_KEY_BITS, get_oracle_mode, validate_config
from .oracle import DecryptionOracle
from .store import ConfidentialRecordStore
from ..util.logging import logger


@dataclass
class VaultRuntime:
    context: ConfidentialContext
    oracle: DecryptionOracle
    store: ConfidentialRecordStore

    def shutdown(self):
        self.oracle.stop()


def build_runtime(db_path: str = None, keys_path: str = None, key_bits: int = None,
                  oracle_mode: str = None, signing_key: Optional[bytes] = None,
                  context: ConfidentialContext = None) -> VaultRuntime:
    """Build the runtime from configuration, starting the oracle worker in auto mode."""
    issues = validate_config()
    if issues:
        raise ValueError(f"Configuration invalid: {issues}")

    oracle_mode = oracle_mode or get_oracle_mode()
    if oracle_mode not in ["auto", "manual"]:
        raise ValueError(f"Invalid oracle mode: {oracle_mode}")

    if context is None:
        context = ConfidentialContext.load_or_create(keys_path or KEYS_PATH, key_bits or PAILLIER_KEY_BITS)

    oracle = DecryptionOracle(context, signing_key=signing_key)
    store = ConfidentialRecordStore(oracle, db_path=db_path or DB_PATH)

    if oracle_mode == "auto":
        oracle.start()

    logger.log_operation("runtime.build", "success", {
        "db_path": store.db_path,
        "oracle_mode": oracle_mode,
        "key_fingerprint": context.fingerprint
    })
    return VaultRuntime(context=context, oracle=oracle, store=store)
