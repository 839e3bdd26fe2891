"""API Security — bearer-token guard for the pipeline control API.

Starting a run, playing a manual job and cancelling a run all change what
the engine executes, so they sit behind the same check as the read-only
run listings.

    - CONVEYOR_API_KEY: When set, every /pipelines endpoint requires
      ``Authorization: Bearer <key>``. When unset, the API is open, which
      suits a server bound to localhost.
    - An empty CONVEYOR_API_KEY still counts as configured; no token
      matches it, so every request is refused.

Usage:
    @router.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str, _: bool = Depends(require_api_key)):
        ...
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("conveyor.api_security")

API_KEY_ENV = "CONVEYOR_API_KEY"

_bearer_scheme = HTTPBearer(auto_error=False)


def get_security_config() -> dict:
    """Whether the control API currently requires a token, for /pipelines/status."""
    return {
        "authentication_required": API_KEY_ENV in os.environ,
        "api_key_env_var": API_KEY_ENV,
    }


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency guarding pipeline endpoints with CONVEYOR_API_KEY.

    The key is read on every request, so rotating it needs no restart.
    """
    expected_key = os.environ.get(API_KEY_ENV)
    if expected_key is None:
        return True

    client = request.client.host if request.client else "unknown"
    if credentials is None:
        logger.warning("Pipeline API request without a token from %s", client)
        raise _unauthorized(
            "Authentication required. Provide Authorization: Bearer <api_key> header."
        )

    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Pipeline API request with an invalid token from %s", client)
        raise _unauthorized("Invalid API key.")

    return True
