"""
Token checks for the shield API.

Ingest, admin and metrics routes each accept an optional token, sent as
X-API-Key or as a Bearer Authorization header. An unset token leaves
the route open (development only; production settings require all three).
"""

from fastapi import Header, HTTPException, status

from ..config import settings


def _extract_token(authorization: str | None, x_api_key: str | None) -> str | None:
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _check_token(expected: str | None, authorization: str | None, x_api_key: str | None) -> None:
    if not expected:
        return
    if _extract_token(authorization, x_api_key) != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_api_token(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    """Guard for event ingestion."""
    _check_token(settings.api_token, authorization, x_api_key)


def require_admin_token(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    """Guard for review, appeal and investigation routes."""
    _check_token(settings.admin_token, authorization, x_api_key)


def require_metrics_token(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    _check_token(settings.metrics_token, authorization, x_api_key)
