from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, Sequence

from sqlalchemy.exc import IntegrityError

from tagpush.core.errors import InvalidArgumentError
from tagpush.domain.models import DeviceToken
from tagpush.domain.types import DeviceRecord
from tagpush.persistence.db import Database
from tagpush.persistence.repos import devices as devices_repo


logger = logging.getLogger(__name__)


class DeviceRegistry(Protocol):
    """Registry capability consumed by dispatch, the worker pool and the API."""

    async def find_by_matching_tags(self, tags: Sequence[str]) -> list[DeviceRecord]:
        ...

    async def upsert_by_token(
        self,
        *,
        token: str,
        platform: str,
        tags: Sequence[str],
        locale: str,
    ) -> DeviceRecord:
        ...

    async def patch_tags(
        self,
        token: str,
        *,
        tags_to_add: Sequence[str],
        tags_to_remove: Sequence[str],
    ) -> DeviceRecord | None:
        ...

    async def remove_by_tokens(self, tokens: Sequence[str]) -> int:
        ...

    async def find_by_token_or_prefix(self, token_id: str) -> DeviceRecord | None:
        ...


def to_record(row: DeviceToken) -> DeviceRecord:
    return DeviceRecord(
        token=row.token,
        platform=row.platform,
        tags=tuple(row.tag_names),
        locale=row.locale,
        last_active_at=row.last_active_at,
    )


class SqlDeviceRegistry:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def find_by_matching_tags(self, tags: Sequence[str]) -> list[DeviceRecord]:
        async with self._db.session() as session:
            rows = await devices_repo.find_by_matching_tags(session, tags)
            return [to_record(row) for row in rows]

    async def upsert_by_token(
        self,
        *,
        token: str,
        platform: str,
        tags: Sequence[str],
        locale: str,
    ) -> DeviceRecord:
        try:
            return await self._upsert(token=token, platform=platform, tags=tags, locale=locale)
        except IntegrityError:
            # A concurrent registration inserted the same token first; the retry takes the update path.
            logger.info("device upsert raced on insert; retrying as update")
            return await self._upsert(token=token, platform=platform, tags=tags, locale=locale)

    async def _upsert(self, *, token: str, platform: str, tags: Sequence[str], locale: str) -> DeviceRecord:
        async with self._db.session() as session:
            row = await devices_repo.upsert_by_token(
                session,
                token=token,
                platform=platform,
                tags=tags,
                locale=locale,
            )
            record = to_record(row)
            await session.commit()
            return record

    async def patch_tags(
        self,
        token: str,
        *,
        tags_to_add: Sequence[str],
        tags_to_remove: Sequence[str],
    ) -> DeviceRecord | None:
        async with self._db.session() as session:
            row = await devices_repo.get_by_token(session, token)
            if row is None:
                return None
            await devices_repo.patch_tags(
                session,
                row,
                tags_to_add=tags_to_add,
                tags_to_remove=tags_to_remove,
            )
            record = to_record(row)
            await session.commit()
            return record

    async def remove_by_tokens(self, tokens: Sequence[str]) -> int:
        async with self._db.session() as session:
            removed = await devices_repo.remove_by_tokens(session, tokens)
            await session.commit()
            return removed

    async def find_by_token_or_prefix(self, token_id: str) -> DeviceRecord | None:
        async with self._db.session() as session:
            row = await devices_repo.find_by_token_or_prefix(session, token_id)
            return to_record(row) if row is not None else None


async def find_by_tags(registry: DeviceRegistry, tags: Iterable[str]) -> list[DeviceRecord]:
    # Read-only tag query; result order is unspecified.
    if isinstance(tags, (str, bytes)):
        raise InvalidArgumentError("Tags must be a non-empty array")
    tag_list = list(tags)
    if not tag_list:
        raise InvalidArgumentError("Tags must be a non-empty array")
    if not all(isinstance(tag, str) for tag in tag_list):
        raise InvalidArgumentError("All tags must be strings")
    return await registry.find_by_matching_tags(tag_list)
