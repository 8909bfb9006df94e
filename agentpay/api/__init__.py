"""
REST API module for AgentPay.
Provides access checks, payment submission and cron endpoints.
"""

from .routes import router, create_api_app

__all__ = ["router", "create_api_app"]
