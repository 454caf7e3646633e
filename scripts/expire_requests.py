#!/usr/bin/env python3
"""
Maintenance: expire decryption requests the oracle never answered.
Expired requests free their records for a new decryption request.
"""

import argparse
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Allow running from a source checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from loyalty_vault.core.config import get_request_ttl
from loyalty_vault.core.runtime import build_runtime


def main():
    parser = argparse.ArgumentParser(description="Expire stale decryption requests")
    parser.add_argument("--ttl", type=int, default=get_request_ttl(),
                        help="Age in seconds after which a pending request expires (default: DECRYPTION_REQUEST_TTL_SEC)")
    parser.add_argument("--dry-run", action="store_true", help="Only list requests that would expire")
    args = parser.parse_args()

    if args.ttl <= 0:
        print("❌ TTL must be > 0 (set DECRYPTION_REQUEST_TTL_SEC or pass --ttl)")
        sys.exit(1)

    runtime = build_runtime(oracle_mode="manual")
    store = runtime.store

    if args.dry_run:
        cutoff = datetime.now() - timedelta(seconds=args.ttl)
        pending = [r for r in store.list_pending_requests() if r.requested_at < cutoff]
        print(f"📋 {len(pending)} request(s) would expire")
        for request in pending:
            print(f"   {request.request_id}  record={request.record_id}  requested_at={request.requested_at.isoformat()}")
        return

    expired = store.expire_stale_requests(args.ttl)
    print(f"✅ Expired {len(expired)} request(s) older than {args.ttl}s")
    for request_id in expired:
        print(f"   {request_id}")


if __name__ == "__main__":
    main()
