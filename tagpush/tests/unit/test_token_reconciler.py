from __future__ import annotations

from typing import Sequence

import pytest

from tagpush.services.reconciler import InvalidTokenReconciler
from tagpush.services.telemetry import counters_snapshot


class RecordingRegistry:
    def __init__(self, error: Exception | None = None) -> None:
        self.removed: list[list[str]] = []
        self.error = error

    async def remove_by_tokens(self, tokens: Sequence[str]) -> int:
        if self.error is not None:
            raise self.error
        self.removed.append(list(tokens))
        return len(tokens)


@pytest.mark.asyncio
async def test_remove_tokens_filters_and_dedupes() -> None:
    registry = RecordingRegistry()
    reconciler = InvalidTokenReconciler(registry)

    removed = await reconciler.remove_tokens(["a", "", None, "b", "a", 7])

    assert removed == 2
    assert registry.removed == [["a", "b"]]
    assert counters_snapshot()["invalid_tokens_removed_total"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("tokens", [[], None, ["", None]])
async def test_remove_tokens_is_noop_without_usable_tokens(tokens) -> None:
    registry = RecordingRegistry()
    assert await InvalidTokenReconciler(registry).remove_tokens(tokens) == 0
    assert registry.removed == []


@pytest.mark.asyncio
async def test_remove_tokens_never_raises() -> None:
    reconciler = InvalidTokenReconciler(RecordingRegistry(error=RuntimeError("db down")))

    assert await reconciler.remove_tokens(["a"]) == 0
    assert counters_snapshot()["reconcile_failures_total"] == 1


@pytest.mark.asyncio
async def test_remove_tokens_rejects_non_iterable_input_quietly() -> None:
    registry = RecordingRegistry()
    assert await InvalidTokenReconciler(registry).remove_tokens(42) == 0  # type: ignore[arg-type]
    assert registry.removed == []
