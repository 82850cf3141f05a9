#!/usr/bin/env python3
"""
Backend startup wrapper: runs backend.main:app under uvicorn.

Usage:
    python backend/start_backend.py --port 8000
"""
import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the dashboard backend")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    print("[Backend] Starting dashboard backend")
    print(f"[Backend] Server: http://{args.host}:{args.port}")
    uvicorn.run("backend.main:app", host=args.host, port=args.port, reload=args.reload, log_level="info")


if __name__ == "__main__":
    main()
