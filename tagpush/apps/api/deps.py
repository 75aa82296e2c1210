from __future__ import annotations

import hmac
import logging

import jwt
from fastapi import Header, HTTPException, Request, status

from tagpush.core.config import Settings
from tagpush.persistence.db import Database
from tagpush.services.dispatch.orchestrator import DispatchOrchestrator
from tagpush.services.queue import JobQueue
from tagpush.services.registry import DeviceRegistry


logger = logging.getLogger(__name__)


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_orchestrator(request: Request) -> DispatchOrchestrator:
    return request.app.state.orchestrator


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _config_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Server configuration error",
    )


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _api_key_matches(settings: Settings, presented: str | None) -> bool:
    # Constant-time comparison so key guesses cannot be timed.
    if not settings.api_key or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), settings.api_key.encode("utf-8"))


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None),
) -> None:
    settings = get_settings_dep(request)
    if not settings.api_key:
        logger.error("API_KEY is not configured; rejecting %s", request.url.path)
        raise _config_error()
    if not _api_key_matches(settings, x_api_key or _bearer(authorization)):
        raise _unauthorized("Invalid or missing API key")


def decode_device_token(settings: Settings, credential: str) -> str:
    """Verify a device JWT and return the push token it was issued for."""
    if not settings.device_secret:
        logger.error("DEVICE_SECRET is not configured; device auth unavailable")
        raise _config_error()
    try:
        claims = jwt.decode(credential, settings.device_secret, algorithms=["HS256"])
    except jwt.PyJWTError as exc:
        logger.warning("device auth verification failed: %s", exc)
        raise _unauthorized("Invalid device auth token") from exc
    device_token = claims.get("token")
    if not isinstance(device_token, str) or not device_token:
        raise _unauthorized("Invalid device auth token")
    return device_token


async def require_device_or_api_key(
    request: Request,
    token: str,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_device_auth: str | None = Header(default=None, alias="X-Device-Auth"),
    authorization: str | None = Header(default=None),
) -> str:
    # Server callers use the API key; a device may only edit the token its JWT names.
    settings = get_settings_dep(request)
    if _api_key_matches(settings, x_api_key or _bearer(authorization)):
        return "api_key"
    credential = x_device_auth or _bearer(authorization)
    if not credential:
        raise _unauthorized("Missing device auth token")
    device_token = decode_device_token(settings, credential)
    if device_token != token.strip():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Device auth token does not match the requested token",
        )
    return "device"
