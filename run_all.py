"""
Run both the reconciliation worker and the AgentPay API simultaneously.

The API is built around a shared engine whose scheduler is started by the
worker task, so reconciliation runs once per process:
- Reconciliation worker (finalization + earn payouts)
- FastAPI server

Usage:
    python run_all.py
"""

import asyncio
import os
import sys
import signal


async def run_worker(engine):
    """Run the reconciliation scheduler."""
    await engine.scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await engine.scheduler.stop()


async def run_api(engine):
    """Run the API server."""
    import uvicorn
    from agentpay.api import create_api_app

    app = create_api_app(engine)
    # Railway uses PORT, fallback to API_PORT or 8000
    port = int(os.environ.get("PORT", os.environ.get("API_PORT", 8000)))
    host = os.environ.get("API_HOST", "0.0.0.0")

    print(f"Starting API server on {host}:{port}")

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main():
    """Run worker and API concurrently."""
    from agentpay.config import get_settings
    from agentpay.services.engine import build_engine
    from agentpay.utils.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level, role="all")

    print("=" * 50)
    print("Starting AgentPay")
    print("  - Reconciliation worker")
    print("  - Payments API")
    print("=" * 50)

    engine = build_engine(settings)
    await engine.db.create_tables()

    worker_task = asyncio.create_task(run_worker(engine))
    api_task = asyncio.create_task(run_api(engine))

    # The API returns when uvicorn shuts down; stop the worker with it
    try:
        await api_task
    except asyncio.CancelledError:
        print("\nShutting down...")
        api_task.cancel()
    finally:
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
        await engine.close()


def signal_handler(sig, frame):
    """Handle shutdown signals."""
    print("\nReceived shutdown signal...")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, signal_handler)

    asyncio.run(main())
