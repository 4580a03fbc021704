#!/usr/bin/env python3
"""
Run the backend API server (league views, user leagues, internal jobs).

Usage:
    python scripts/run_api.py
    python scripts/run_api.py --port 8080 --no-reload
"""
import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

backend = Path(__file__).resolve().parent.parent
load_dotenv(backend / ".env")
sys.path.insert(0, str(backend / "src"))
os.chdir(backend)

import uvicorn


def parse_args():
    parser = argparse.ArgumentParser(description="Run the league dashboard API")
    parser.add_argument("--host", default=os.getenv("API_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000")))
    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Disable auto-reload (always off outside development)",
    )
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    development = os.getenv("ENVIRONMENT", "development") == "development"
    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=development and not args.no_reload,
        log_level=os.getenv("LOG_LEVEL", "INFO").lower(),
    )
