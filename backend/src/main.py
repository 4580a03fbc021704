#!/usr/bin/env python3
"""
League Backfill Service - Main Entry Point

Drains the league backfill queue on an interval by calling the API's
internal runner endpoint, so warmup requests hit the same API process
(and its cache) that serves the dashboard.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path

# Load .env from backend directory before Config() is used
from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent))

import httpx

from config import Config
from utils.logger import setup_logging

logger = logging.getLogger(__name__)

BACKFILL_RUN_PATH = "/api/internal/backfill/run"


class BackfillService:
    """Main service class for draining the backfill queue."""

    def __init__(self, config: Config = None, http_client: httpx.AsyncClient = None):
        self.config = config or Config()
        # A batch can run for the whole warmup budget
        timeout = self.config.backfill_time_budget_ms / 1000 + 60
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.running = False
        self._stop = asyncio.Event()

    def _headers(self):
        if self.config.backfill_runner_secret:
            return {"x-backfill-secret": self.config.backfill_runner_secret}
        return {}

    async def run_once(self) -> dict:
        """Trigger one runner batch; returns the decoded response (empty on error)."""
        url = f"{self.config.api_origin.rstrip('/')}{BACKFILL_RUN_PATH}"
        try:
            response = await self.http_client.post(url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Backfill runner call failed", extra={
                "error": str(e),
                "error_type": type(e).__name__,
            })
            return {}
        try:
            body = response.json()
        except ValueError:
            body = {}
        logger.info("Backfill batch finished", extra={
            "status": response.status_code,
            "processed": len(body.get("processed") or []),
            "ok": body.get("ok"),
        })
        return body

    async def start(self):
        """Start the backfill loop."""
        logger.info("Starting League Backfill Service", extra={
            "version": "1.0.0",
            "environment": self.config.environment,
            "api_origin": self.config.api_origin,
        })

        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown, sig)

        self.running = True
        try:
            while self.running:
                body = await self.run_once()
                # Keep draining while jobs are being processed
                if body.get("processed"):
                    continue
                try:
                    await asyncio.wait_for(
                        self._stop.wait(), timeout=self.config.backfill_poll_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.http_client.aclose()

    def _handle_shutdown(self, signum):
        """Handle shutdown signals gracefully."""
        logger.info("Received shutdown signal", extra={"signal": signum})
        self.running = False
        self._stop.set()


async def main():
    """Main entry point."""
    setup_logging()

    service = BackfillService()
    try:
        await service.start()
    except KeyboardInterrupt:
        logger.info("Service interrupted by user")
    except Exception as e:
        logger.error("Service crashed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
