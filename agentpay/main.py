"""
AgentPay worker - reconciliation and earn distribution scheduler.

Runs the Reconciliation Job and the Earn Distribution Engine on a fixed
cadence, independently of the API process:
  - Worker: python -m agentpay.main
  - API: python run_api.py
"""

import asyncio
import signal
import sys

from agentpay.config import get_settings
from agentpay.services.engine import build_engine
from agentpay.utils.logging import setup_logging, get_logger

logger = get_logger(__name__)


async def run_migrations() -> None:
    """Run database migrations on startup."""
    import subprocess

    logger.info("Running database migrations...")
    try:
        result = subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            capture_output=True,
            text=True,
            cwd=".",
        )
        if result.returncode == 0:
            logger.info("Migrations completed successfully")
        else:
            logger.warning("Migration output", stdout=result.stdout, stderr=result.stderr)
    except OSError as e:
        logger.error("Migration failed", error=str(e))


async def run_worker() -> None:
    """Run the scheduler until a shutdown signal arrives."""
    settings = get_settings()

    logger.info("Starting AgentPay worker...")
    await run_migrations()

    engine = build_engine(settings)
    stop_event = asyncio.Event()

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    await engine.scheduler.start()
    logger.info("Worker started! Press Ctrl+C to stop.")

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down services...")
        await engine.close()
        logger.info("Shutdown complete")


def main() -> None:
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings.log_level, role="worker")

    logger.info(
        "AgentPay worker",
        version="1.0.0",
        log_level=settings.log_level,
        settlement_configured=settings.settlement_configured,
    )

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
