from __future__ import annotations

from typing import Protocol, Sequence

from tagpush.domain.types import BatchResult, PushContent


# Gateway statuses that mean the token will never be deliverable again.
GONE_STATUS = 410
MALFORMED_STATUS = 400
MALFORMED_TOKEN_REASONS = frozenset({"BadDeviceToken", "DeviceTokenNotForTopic"})


class PushGateway(Protocol):
    async def send_batch(self, tokens: Sequence[str], content: PushContent) -> BatchResult:
        ...

    async def aclose(self) -> None:
        ...


def is_permanent_failure(status: int | None, reason: str | None) -> bool:
    # Everything that is not gone or malformed stays registered.
    if status == GONE_STATUS:
        return True
    if status == MALFORMED_STATUS:
        return reason is None or reason in MALFORMED_TOKEN_REASONS
    return False
