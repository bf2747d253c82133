#!/usr/bin/env python3
"""
Backend startup wrapper.

Usage:
    python backend/start_backend.py [--host 0.0.0.0] [--port 8000]
"""
import argparse
import os
import sys

# Add workspace to path
workspace_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, workspace_root)

import uvicorn  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Inclusiva subscription backend")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    args = parser.parse_args()

    print("[Backend] Starting Inclusiva subscription backend")
    print(f"[Backend] Server: http://{args.host}:{args.port}")
    uvicorn.run(
        "backend.main:app",
        host=args.host,
        port=args.port,
        reload=False,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)
