from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field, field_validator, model_validator

from tagpush.apps.api.deps import get_registry, require_api_key, require_device_or_api_key
from tagpush.core.config import DEFAULT_LOCALE
from tagpush.core.logging import token_preview
from tagpush.domain.types import PLATFORMS, DeviceRecord
from tagpush.services.registry import DeviceRegistry


router = APIRouter(tags=["tokens"])


class RegisterRequest(BaseModel):
    token: str
    platform: str | None = None
    tags: list[str] | None = None
    locale: str | None = None

    @field_validator("token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("token is required and must be a non-empty string")
        return stripped

    @field_validator("platform")
    @classmethod
    def _check_platform(cls, value: str | None) -> str | None:
        if value and value not in PLATFORMS:
            raise ValueError(f"platform must be one of: {', '.join(PLATFORMS)}")
        return value or None

    @field_validator("locale")
    @classmethod
    def _check_locale(cls, value: str | None) -> str | None:
        if value and len(value) < 2:
            raise ValueError("locale must be a valid language code (e.g., 'en', 'es')")
        return value or None


class TagPatchRequest(BaseModel):
    tags_to_add: list[str] | None = Field(default=None, alias="tagsToAdd")
    tags_to_remove: list[str] | None = Field(default=None, alias="tagsToRemove")

    model_config = {"extra": "forbid", "populate_by_name": True}

    @model_validator(mode="after")
    def _require_operation(self) -> "TagPatchRequest":
        if self.tags_to_add is None and self.tags_to_remove is None:
            raise ValueError("At least one of tagsToAdd or tagsToRemove is required")
        return self


def _token_body(record: DeviceRecord) -> dict[str, Any]:
    # Full tokens never leave the service; responses carry a preview only.
    return {
        "tokenPreview": token_preview(record.token or ""),
        "platform": record.platform,
        "tags": list(record.tags),
        "locale": record.locale,
        "lastActive": record.last_active_at.isoformat() if record.last_active_at else None,
    }


@router.post("/register")
async def register_device(
    payload: RegisterRequest,
    registry: DeviceRegistry = Depends(get_registry),
) -> dict[str, Any]:
    record = await registry.upsert_by_token(
        token=payload.token,
        platform=payload.platform or "ios",
        tags=payload.tags or [],
        locale=payload.locale or DEFAULT_LOCALE,
    )
    return {"message": "Device token registered successfully", "token": _token_body(record)}


@router.get("/token/{token_id}", dependencies=[Depends(require_api_key)])
async def get_device(
    token_id: str = Path(...),
    registry: DeviceRegistry = Depends(get_registry),
) -> dict[str, Any]:
    if len(token_id) < 10:
        raise HTTPException(status_code=400, detail="tokenId must be at least 10 characters")
    record = await registry.find_by_token_or_prefix(token_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Token not found")
    return {"token": _token_body(record)}


@router.patch("/token/{token}")
async def patch_device_tags(
    payload: TagPatchRequest,
    token: str = Path(...),
    _auth: str = Depends(require_device_or_api_key),
    registry: DeviceRegistry = Depends(get_registry),
) -> dict[str, Any]:
    record = await registry.patch_tags(
        token.strip(),
        tags_to_add=payload.tags_to_add or [],
        tags_to_remove=payload.tags_to_remove or [],
    )
    if record is None:
        raise HTTPException(status_code=404, detail="Token not found")
    return {"message": "Token tags updated successfully", "token": _token_body(record)}
