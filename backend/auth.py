"""
API key authentication for the Match Edge API.

Keys come from API_KEY_USER1..API_KEY_USER5; user1 is the admin unless
ADMIN_API_KEY names a separate admin key.  Keys are read on first use so
importing the app never fails on a missing key.
"""

import os
from functools import lru_cache
from typing import Dict

from dotenv import load_dotenv
from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

load_dotenv()

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
ADMIN_USER = "admin"


@lru_cache(maxsize=1)
def get_valid_api_keys() -> Dict[str, str]:
    """Map of API key -> user identifier."""
    keys = {}
    for i in range(1, 6):
        key = os.getenv(f"API_KEY_USER{i}")
        if key:
            keys[key] = f"user{i}"

    admin_key = os.getenv("ADMIN_API_KEY")
    if admin_key:
        keys[admin_key] = ADMIN_USER

    if not keys and os.getenv("ENVIRONMENT") == "development":
        # Development fallback (never use in production)
        keys["dev-key-insecure"] = "user1"
    return keys


def _is_admin(user: str) -> bool:
    if os.getenv("ADMIN_API_KEY"):
        return user == ADMIN_USER
    return user == "user1"


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """Return the user identifier for a valid ``X-API-Key`` header."""
    keys = get_valid_api_keys()
    if not keys:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No API keys configured. Set API_KEY_USER1 in environment.",
        )
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if api_key not in keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return keys[api_key]


async def verify_admin_api_key(user: str = Security(verify_api_key)) -> str:
    """Admin-only routes: pre-analysis trigger, settlement, injury overrides."""
    if not _is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
