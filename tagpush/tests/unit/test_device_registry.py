from __future__ import annotations

import pytest
from sqlalchemy import func, select

from tagpush.core.errors import InvalidArgumentError
from tagpush.domain.models import DeviceTag, DeviceToken
from tagpush.services.registry import find_by_tags


async def _count(database, model) -> int:
    async with database.session() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.asyncio
async def test_reregistering_a_token_keeps_one_record_with_latest_tags(registry, database) -> None:
    await registry.upsert_by_token(token="abc123", platform="ios", tags=["x", "y"], locale="en")
    record = await registry.upsert_by_token(token="abc123", platform="android", tags=["z"], locale="es")

    assert record.tags == ("z",)
    assert record.platform == "android"
    assert record.locale == "es"
    assert await _count(database, DeviceToken) == 1
    assert await _count(database, DeviceTag) == 1


@pytest.mark.asyncio
async def test_register_then_patch_tags_replaces_exactly(registry, database) -> None:
    await registry.upsert_by_token(token="abc123", platform="ios", tags=["x"], locale="en")

    record = await registry.patch_tags("abc123", tags_to_add=["y"], tags_to_remove=["x"])

    assert record is not None
    assert record.tags == ("y",)
    assert await _count(database, DeviceToken) == 1


@pytest.mark.asyncio
async def test_patch_tags_adds_before_removing_and_keeps_order(registry) -> None:
    await registry.upsert_by_token(token="device-1", platform="ios", tags=["a", "b"], locale="en")

    record = await registry.patch_tags("device-1", tags_to_add=["c", "a", "d"], tags_to_remove=["d"])

    assert record.tags == ("a", "b", "c")


@pytest.mark.asyncio
async def test_patch_tags_for_unknown_token_returns_none(registry) -> None:
    assert await registry.patch_tags("missing", tags_to_add=["a"], tags_to_remove=[]) is None


@pytest.mark.asyncio
async def test_find_by_tags_matches_any_tag(registry) -> None:
    await registry.upsert_by_token(token="t-sports", platform="ios", tags=["sports"], locale="en")
    await registry.upsert_by_token(token="t-news", platform="ios", tags=["news", "sports"], locale="es")
    await registry.upsert_by_token(token="t-weather", platform="android", tags=["weather"], locale="fr")

    matched = await find_by_tags(registry, ["sports", "weather"])
    assert {record.token for record in matched} == {"t-sports", "t-news", "t-weather"}

    # A device carrying two of the tags is returned once.
    matched = await find_by_tags(registry, ["news", "sports"])
    assert sorted(record.token for record in matched) == ["t-news", "t-sports"]

    assert await find_by_tags(registry, ["nothing"]) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("tags", [[], "sports", ["ok", 1]])
async def test_find_by_tags_rejects_unusable_input(registry, tags) -> None:
    with pytest.raises(InvalidArgumentError):
        await find_by_tags(registry, tags)


@pytest.mark.asyncio
async def test_remove_by_tokens_deletes_devices_and_their_tags(registry, database) -> None:
    for token in ("keep-1", "drop-1", "drop-2"):
        await registry.upsert_by_token(token=token, platform="ios", tags=["t"], locale="en")

    removed = await registry.remove_by_tokens(["drop-1", "drop-2", "never-registered"])

    assert removed == 2
    remaining = await find_by_tags(registry, ["t"])
    assert [record.token for record in remaining] == ["keep-1"]
    assert await _count(database, DeviceTag) == 1


@pytest.mark.asyncio
async def test_find_by_token_or_prefix(registry) -> None:
    await registry.upsert_by_token(token="0123456789abcdef", platform="ios", tags=[], locale="en")
    await registry.upsert_by_token(token="with%percent_token", platform="ios", tags=[], locale="en")

    exact = await registry.find_by_token_or_prefix("0123456789abcdef")
    prefix = await registry.find_by_token_or_prefix("0123456789")
    assert exact is not None and prefix is not None
    assert exact.token == prefix.token == "0123456789abcdef"

    # LIKE wildcards in the prefix are matched literally.
    assert await registry.find_by_token_or_prefix("with%") is not None
    assert await registry.find_by_token_or_prefix("with_") is None
    assert await registry.find_by_token_or_prefix("zzzzzzzzzz") is None
