# /lingoflow/utils/dependencies.py

import secrets
from typing import Optional
from fastapi import Request, HTTPException

from lingoflow.config.settings import settings

# Cookie set by the settings page; holds the user's own provider key.
API_KEY_COOKIE = "ai-api-key"


def get_remote_address(request: Request) -> str:
    """Client IP for rate limiting, with a loopback default for test clients."""
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
    return True


def get_cookie_api_key(request: Request) -> Optional[str]:
    return request.cookies.get(API_KEY_COOKIE)
