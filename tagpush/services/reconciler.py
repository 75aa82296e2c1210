from __future__ import annotations

import logging
from typing import Any, Iterable

from tagpush.core.errors import ReconciliationError
from tagpush.services.registry import DeviceRegistry
from tagpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _clean_tokens(tokens: Iterable[Any]) -> list[str]:
    # Drop non-string and empty entries, dedupe, keep first-seen order.
    seen: set[str] = set()
    cleaned: list[str] = []
    for token in tokens:
        if not isinstance(token, str) or not token or token in seen:
            continue
        seen.add(token)
        cleaned.append(token)
    return cleaned


class InvalidTokenReconciler:
    """Prunes tokens the gateway rejected permanently.

    Cleanup is best-effort: remove_tokens never raises.
    """

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    async def remove_tokens(self, tokens: Iterable[Any] | None) -> int:
        if not tokens:
            return 0
        try:
            cleaned = _clean_tokens(tokens)
        except TypeError:
            logger.error("invalid token list passed to reconciler: %r", type(tokens).__name__)
            return 0
        if not cleaned:
            return 0
        try:
            removed = await self._registry.remove_by_tokens(cleaned)
        except Exception as exc:  # noqa: BLE001 - cleanup must never fail the job
            error = ReconciliationError(f"Failed to remove {len(cleaned)} invalid tokens")
            increment_counter("reconcile_failures_total")
            logger.error("%s", error, exc_info=exc)
            return 0
        increment_counter("invalid_tokens_removed_total", removed)
        logger.info("removed %d of %d invalid tokens", removed, len(cleaned))
        return removed
