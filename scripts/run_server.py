#!/usr/bin/env python3
"""
Start the Loyalty Vault API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

# Allow running from a source checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

from loyalty_vault.core.config import validate_config


def main():
    parser = argparse.ArgumentParser(description="Run the Loyalty Vault API server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    args = parser.parse_args()

    issues = validate_config()
    if issues:
        print("❌ Configuration invalid:")
        for issue in issues:
            print(f"   - {issue}")
        sys.exit(1)

    print(f"🚀 Starting Loyalty Vault API on http://{args.host}:{args.port}")
    uvicorn.run("loyalty_vault.api.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
