"""
Run the AgentPay API server.

The API process also runs the reconciliation scheduler in-process.
To run reconciliation separately, use the worker:
  - Worker: python -m agentpay.main
  - API: python run_api.py

Or use the combined runner (see run_all.py)
"""

import os

import uvicorn

from agentpay.api import create_api_app
from agentpay.config import get_settings
from agentpay.utils.logging import setup_logging


def main():
    """Run the API server."""
    setup_logging(get_settings().log_level, role="api")
    app = create_api_app()

    # Get port from environment or default
    port = int(os.environ.get("PORT", os.environ.get("API_PORT", 8000)))
    host = os.environ.get("API_HOST", "0.0.0.0")

    print(f"Starting AgentPay API on {host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
