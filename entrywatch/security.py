from __future__ import annotations

import hmac

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from entrywatch.errors import ApiError
from entrywatch.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    expected = get_settings().admin_api_token.strip()
    if not expected or not hmac.compare_digest(credentials.credentials.encode("utf-8"), expected.encode("utf-8")):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Invalid bearer token.")

    request.state.actor = "admin"
    request.state.actor_id = "admin_api_token"
    return "admin"
