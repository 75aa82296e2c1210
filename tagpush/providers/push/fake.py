from __future__ import annotations

import asyncio
from typing import Iterable, Sequence

from tagpush.core.errors import TransientGatewayError
from tagpush.domain.types import BatchResult, PushContent


class FakePushGateway:
    """In-process gateway for local runs and tests.

    invalid_tokens are reported as permanently rejected, failing_tokens as
    transport failures, and any batch containing a token from failing_batches_with
    raises a transient error for the whole batch.
    """

    def __init__(
        self,
        *,
        invalid_tokens: Iterable[str] = (),
        failing_tokens: Iterable[str] = (),
        failing_batches_with: Iterable[str] = (),
        fail_all: bool = False,
        delay_s: float = 0.0,
    ) -> None:
        self.invalid_tokens = set(invalid_tokens)
        self.failing_tokens = set(failing_tokens)
        self.failing_batches_with = set(failing_batches_with)
        self.fail_all = fail_all
        self.delay_s = delay_s
        self.calls: list[tuple[list[str], PushContent]] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False

    async def send_batch(self, tokens: Sequence[str], content: PushContent) -> BatchResult:
        batch = list(tokens)
        self.calls.append((batch, content))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            else:
                # Yield so concurrent callers actually interleave.
                await asyncio.sleep(0)
            if self.fail_all or self.failing_batches_with.intersection(batch):
                raise TransientGatewayError("fake gateway batch failure")
            result = BatchResult(
                invalid_tokens={token for token in batch if token in self.invalid_tokens},
                failed_tokens=[token for token in batch if token in self.failing_tokens],
            )
            if result.failed_tokens and len(result.failed_tokens) == len(batch):
                raise TransientGatewayError("fake gateway transport failure")
            return result
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True
