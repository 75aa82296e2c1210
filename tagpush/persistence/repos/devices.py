from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tagpush.domain.models import DeviceTag, DeviceToken


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _unique(values: Iterable[str]) -> list[str]:
    # Order-preserving dedupe so tag lists keep the caller's ordering.
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


async def find_by_matching_tags(session: AsyncSession, tags: Sequence[str]) -> list[DeviceToken]:
    # OR semantics: a device matches when it carries at least one of the tags.
    matching = select(DeviceTag.token).where(DeviceTag.tag.in_(list(tags)))
    result = await session.execute(select(DeviceToken).where(DeviceToken.token.in_(matching)))
    return list(result.scalars().all())


async def get_by_token(session: AsyncSession, token: str) -> DeviceToken | None:
    result = await session.execute(select(DeviceToken).where(DeviceToken.token == token))
    return result.scalar_one_or_none()


async def find_by_token_or_prefix(session: AsyncSession, token_id: str) -> DeviceToken | None:
    # Exact matches win; otherwise the first token starting with the given prefix.
    exact = await get_by_token(session, token_id)
    if exact is not None:
        return exact
    result = await session.execute(
        select(DeviceToken)
        .where(DeviceToken.token.startswith(token_id, autoescape=True))
        .order_by(DeviceToken.token)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _replace_tags(session: AsyncSession, device: DeviceToken, tags: Sequence[str]) -> None:
    # Flush the removals first so re-added tags do not collide with the unique constraint.
    device.tags.clear()
    await session.flush()
    device.tags.extend(DeviceTag(tag=tag) for tag in _unique(tags))


async def upsert_by_token(
    session: AsyncSession,
    *,
    token: str,
    platform: str,
    tags: Sequence[str],
    locale: str,
    last_active_at: datetime | None = None,
) -> DeviceToken:
    # Callers commit; a concurrent insert of the same token surfaces as IntegrityError.
    active_at = last_active_at or _utc_now()
    device = await get_by_token(session, token)
    if device is None:
        device = DeviceToken(
            token=token,
            platform=platform,
            locale=locale,
            last_active_at=active_at,
        )
        device.tags = [DeviceTag(tag=tag) for tag in _unique(tags)]
        session.add(device)
        await session.flush()
        return device
    device.platform = platform
    device.locale = locale
    device.last_active_at = active_at
    await _replace_tags(session, device, tags)
    await session.flush()
    return device


async def patch_tags(
    session: AsyncSession,
    device: DeviceToken,
    *,
    tags_to_add: Sequence[str],
    tags_to_remove: Sequence[str],
) -> DeviceToken:
    # Additions are applied first, then removals, so a tag in both lists ends up absent.
    existing = device.tag_names
    removed = set(tags_to_remove)
    final = [tag for tag in _unique([*existing, *tags_to_add]) if tag not in removed]
    keep = set(final)
    for row in [row for row in device.tags if row.tag not in keep]:
        device.tags.remove(row)
    await session.flush()
    current = set(device.tag_names)
    device.tags.extend(DeviceTag(tag=tag) for tag in final if tag not in current)
    device.last_active_at = _utc_now()
    await session.flush()
    return device


async def remove_by_tokens(session: AsyncSession, tokens: Sequence[str]) -> int:
    # Bulk delete tags explicitly; SQLite does not enforce ON DELETE CASCADE by default.
    token_list = list(tokens)
    if not token_list:
        return 0
    await session.execute(delete(DeviceTag).where(DeviceTag.token.in_(token_list)))
    result = await session.execute(delete(DeviceToken).where(DeviceToken.token.in_(token_list)))
    return int(result.rowcount or 0)
