"""Bearer verification: forward to the identity provider + cache the user id.

Client requests carry the user's access token.  We verify it by calling the
provider's "who am I" endpoint and cache the result for ``auth_cache_ttl_s``.
"""

from __future__ import annotations

import hashlib
import logging
import time

import httpx
from fastapi import HTTPException, Request

from config.settings import get_settings

logger = logging.getLogger(__name__)

# In-memory cache: sha256(token)[:16] → (user_id, expire_at)
_verified_cache: dict[str, tuple[str, float]] = {}

# Swapped for an httpx.MockTransport in tests.
_transport: httpx.AsyncBaseTransport | None = None


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return ""
    return header.removeprefix("Bearer ").strip()


def clear_auth_cache() -> None:
    _verified_cache.clear()


async def get_verified_user_id(request: Request) -> str:
    """Extract and verify the caller's user id from the bearer token.

    1. Read the Authorization header
    2. Check the local cache (keyed by token hash)
    3. On a miss, call the identity provider's verify endpoint
    4. Return the verified user id (never trust ids in request bodies)
    """
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    cache_key = hashlib.sha256(token.encode()).hexdigest()[:16]
    cached = _verified_cache.get(cache_key)
    if cached is not None:
        user_id, expire_at = cached
        if time.time() < expire_at:
            return user_id
        _verified_cache.pop(cache_key, None)

    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=10, transport=_transport) as client:
            resp = await client.get(
                settings.auth_verify_url,
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.TransportError as exc:
        logger.error("Failed to verify token with identity provider: %s", exc)
        raise HTTPException(status_code=502, detail="Auth service unavailable")

    if resp.status_code in (401, 403):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if resp.status_code != 200:
        # Provider trouble is not the caller's fault; clients retry a 502.
        logger.warning("Identity provider answered HTTP %d", resp.status_code)
        raise HTTPException(status_code=502, detail="Auth service unavailable")

    # Provider returns {data: {id, ...}} or a bare {id, ...}
    body = resp.json()
    data = body.get("data", body) if isinstance(body, dict) else {}
    user_id = str(data.get("id", "") or "")
    if not user_id:
        raise HTTPException(status_code=401, detail="Could not extract user id from token")

    _verified_cache[cache_key] = (user_id, time.time() + settings.auth_cache_ttl_s)
    logger.info("Verified user_id=%s via identity provider", user_id)
    return user_id
