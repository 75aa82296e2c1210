from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from tagpush.core.errors import ValidationError
from tagpush.domain.types import PushContent


@dataclass(frozen=True, slots=True)
class DispatchPayload:
    # locale -> content with the shared metadata already attached.
    locales: dict[str, PushContent] = field(default_factory=dict)
    metadata: dict[str, Any] | None = None

    def content_for(self, locale: str) -> PushContent | None:
        return self.locales.get(locale)


def _require_text(locale: str, content: Mapping[str, Any], key: str) -> str:
    value = content.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"localesContent.{locale}.title and text must be strings")
    if not value.strip():
        raise ValidationError(f"localesContent.{locale} must have title and text properties")
    return value


def validate_locales_content(locales_content: Any) -> None:
    # Shared by the builder and the orchestrator so bad input fails before any I/O.
    if not isinstance(locales_content, Mapping):
        raise ValidationError("localesContent must be an object")
    for locale, content in locales_content.items():
        if not isinstance(content, Mapping):
            raise ValidationError(f"localesContent.{locale} must have title and text properties")
        _require_text(str(locale), content, "title")
        _require_text(str(locale), content, "text")
        entry_metadata = content.get("metadata")
        if entry_metadata is not None and not isinstance(entry_metadata, Mapping):
            raise ValidationError(f"localesContent.{locale}.metadata must be an object")


def build_payload(locales_content: Any, metadata: Mapping[str, Any] | None = None) -> DispatchPayload:
    # Per-locale metadata overrides the shared metadata key by key.
    validate_locales_content(locales_content)
    if metadata is not None and not isinstance(metadata, Mapping):
        raise ValidationError("metadata must be an object")
    shared = dict(metadata) if metadata is not None else None
    locales: dict[str, PushContent] = {}
    for locale, content in locales_content.items():
        entry_metadata = content.get("metadata")
        merged: dict[str, Any] | None = shared
        if entry_metadata is not None:
            merged = {**(shared or {}), **dict(entry_metadata)}
        locales[str(locale)] = PushContent(
            title=content["title"],
            text=content["text"],
            metadata=merged,
        )
    return DispatchPayload(locales=locales, metadata=shared)
