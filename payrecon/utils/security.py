from __future__ import annotations

import secrets
from typing import Callable

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from payrecon.config import Settings


_basic_scheme = HTTPBasic()
_bearer_scheme = HTTPBearer(auto_error=False, scheme_name="BearerAuth")

ROLE_STOREFRONT = "storefront"
ROLE_ADMIN = "admin"


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_basic_auth(
    credentials: HTTPBasicCredentials = Depends(_basic_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    """Validate credentials using HTTP Basic authentication."""

    username_valid = secrets.compare_digest(credentials.username or "", settings.api_basic_username)
    password_valid = secrets.compare_digest(credentials.password or "", settings.api_basic_password)
    if not (username_valid and password_valid):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )


def role_for_token(token: str, settings: Settings) -> str | None:
    """Map a bearer token to its role; the admin token also grants storefront access."""
    if settings.admin_bearer_token and secrets.compare_digest(token, settings.admin_bearer_token):
        return ROLE_ADMIN
    if settings.api_bearer_token and secrets.compare_digest(token, settings.api_bearer_token):
        return ROLE_STOREFRONT
    return None


def require_role(role: str) -> Callable[..., None]:
    """Dependency factory validating the bearer token grants ``role``."""

    def _verify(
        credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
        settings: Settings = Depends(get_settings),
    ) -> None:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )
        granted = role_for_token(credentials.credentials.strip(), settings)
        if granted is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if role == ROLE_ADMIN and granted != ROLE_ADMIN:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    return _verify
