"""
Rate limiting setup using slowapi.

Uses Redis as storage backend when configured, otherwise in-memory storage.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..config import get_settings


def _make_limiter() -> Limiter:
    """Create a Limiter with Redis (preferred) or in-memory backend."""
    settings = get_settings()
    storage_uri = f"{settings.redis_url}/1" if settings.redis_url else "memory://"

    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_global],
        storage_uri=storage_uri,
        strategy="fixed-window",
    )


limiter = _make_limiter()


def get_wallet_key(request: Request) -> str:
    """Key function for per-wallet rate limiting on settlement endpoints."""
    wallet = request.headers.get("X-Wallet-Address")
    if wallet:
        return f"wallet:{wallet.lower()}"
    return get_remote_address(request)


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return a clean 429 response with retry_after."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": f"Rate limit exceeded: {exc.detail}",
            "retry_after": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )
