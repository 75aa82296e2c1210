from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from tagpush.core.errors import AllBatchesFailedError, MalformedJobError
from tagpush.domain.types import BatchResult, PushContent
from tagpush.providers.push.fake import FakePushGateway
from tagpush.services.batch_dispatcher import BatchDispatcher, parse_job, partition
from tagpush.services.queue import PushJobContent, PushJobPayload, QueuedJob
from tagpush.services.reconciler import InvalidTokenReconciler
from tagpush.services.registry import find_by_tags
from tagpush.services.resilience import SendLimiter
from tagpush.services.telemetry import counters_snapshot


class RecordingRegistry:
    def __init__(self) -> None:
        self.removed: list[list[str]] = []

    async def remove_by_tokens(self, tokens: Sequence[str]) -> int:
        self.removed.append(list(tokens))
        return len(tokens)


class SlowGateway:
    async def send_batch(self, tokens: Sequence[str], content: PushContent) -> BatchResult:
        await asyncio.sleep(1)
        return BatchResult()

    async def aclose(self) -> None:
        return None


class StallingGateway:
    """Rejects "gone" at once and stalls every other batch."""

    async def send_batch(self, tokens: Sequence[str], content: PushContent) -> BatchResult:
        if "gone" in tokens:
            return BatchResult(invalid_tokens={"gone"})
        await asyncio.sleep(3)
        return BatchResult()

    async def aclose(self) -> None:
        return None


def _job(tokens: list[str]) -> PushJobPayload:
    return PushJobPayload(tokens=tokens, payload=PushJobContent(title="Hi", text="There"), locale="en")


def _dispatcher(gateway, registry=None, *, batch_size: int = 2, limit: int = 5, timeout_ms: int = 1000):
    registry = registry or RecordingRegistry()
    return BatchDispatcher(
        gateway,
        InvalidTokenReconciler(registry),
        SendLimiter("test.gateway", limit),
        batch_size=batch_size,
        gateway_timeout_ms=timeout_ms,
    )


def test_partition_keeps_order_and_short_tail() -> None:
    assert partition(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert partition([], 3) == []


@pytest.mark.parametrize(
    "data",
    [
        "not-a-dict",
        {"tokens": [], "payload": {"title": "a", "text": "b"}},
        {"tokens": ["t"], "payload": {"title": "", "text": "b"}},
        {"tokens": ["t"], "payload": {"title": "a", "text": "   "}},
        {"tokens": ["t"]},
        {"tokens": "t", "payload": {"title": "a", "text": "b"}},
    ],
)
def test_parse_job_rejects_malformed_data(data) -> None:
    with pytest.raises(MalformedJobError):
        parse_job(data)


@pytest.mark.asyncio
async def test_partial_batch_failure_still_succeeds() -> None:
    gateway = FakePushGateway(failing_batches_with={"t3"})
    dispatcher = _dispatcher(gateway, batch_size=2)

    summary = await dispatcher.process(_job(["t1", "t2", "t3", "t4", "t5"]), job_id="job-1")

    assert summary.to_dict() == {
        "totalTokens": 5,
        "successfulBatches": 2,
        "failedBatches": 1,
        "invalidTokens": 0,
    }
    assert len(gateway.calls) == 3
    assert counters_snapshot()["batches_failed_total"] == 1


@pytest.mark.asyncio
async def test_every_batch_failing_fails_the_job_after_reconciling() -> None:
    registry = RecordingRegistry()
    dispatcher = _dispatcher(FakePushGateway(fail_all=True), registry, batch_size=2)

    with pytest.raises(AllBatchesFailedError) as excinfo:
        await dispatcher.process(_job(["t1", "t2", "t3"]), job_id="job-2")

    assert excinfo.value.failed_batches == 2
    assert str(excinfo.value) == "All 2 batches failed to process"
    # Nothing was reported invalid, so there was nothing to remove.
    assert registry.removed == []


@pytest.mark.asyncio
async def test_token_transport_failure_counts_as_failed_sub_batch() -> None:
    gateway = FakePushGateway(failing_tokens={"b"}, invalid_tokens={"c"})
    registry = RecordingRegistry()
    dispatcher = _dispatcher(gateway, registry, batch_size=3)

    summary = await dispatcher.process(_job(["a", "b", "c"]), job_id="job-3")

    assert summary.successful_batches == 1
    assert summary.failed_batches == 1
    assert summary.invalid_tokens == ["c"]
    assert registry.removed == [["c"]]


@pytest.mark.asyncio
async def test_gone_token_is_removed_and_siblings_persist(registry) -> None:
    for token in ("device-a", "device-gone", "device-c"):
        await registry.upsert_by_token(token=token, platform="ios", tags=["news"], locale="en")
    gateway = FakePushGateway(invalid_tokens={"device-gone"})
    dispatcher = _dispatcher(gateway, registry, batch_size=100)

    summary = await dispatcher.process(_job(["device-a", "device-gone", "device-c"]), job_id="job-4")

    assert summary.invalid_tokens == ["device-gone"]
    remaining = await find_by_tags(registry, ["news"])
    assert sorted(record.token for record in remaining) == ["device-a", "device-c"]


@pytest.mark.asyncio
async def test_gateway_timeout_is_a_transient_batch_failure() -> None:
    registry = RecordingRegistry()
    dispatcher = _dispatcher(SlowGateway(), registry, batch_size=10, timeout_ms=20)

    with pytest.raises(AllBatchesFailedError):
        await dispatcher.process(_job(["t1"]), job_id="job-5")

    assert registry.removed == []


@pytest.mark.asyncio
async def test_cancelled_job_still_prunes_tokens_from_finished_batches() -> None:
    registry = RecordingRegistry()
    dispatcher = _dispatcher(StallingGateway(), registry, batch_size=1, timeout_ms=10000)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(dispatcher.process(_job(["gone", "slow"]), job_id="job-6"), 0.2)

    assert registry.removed == [["gone"]]
    assert counters_snapshot()["invalid_tokens_total"] == 1


@pytest.mark.asyncio
async def test_send_limit_holds_across_concurrent_jobs() -> None:
    gateway = FakePushGateway(delay_s=0.01)
    limiter = SendLimiter("shared.gateway", 2)
    reconciler = InvalidTokenReconciler(RecordingRegistry())
    first = BatchDispatcher(gateway, reconciler, limiter, batch_size=1)
    second = BatchDispatcher(gateway, reconciler, limiter, batch_size=1)

    await asyncio.gather(
        first.process(_job([f"a{i}" for i in range(6)]), job_id="job-a"),
        second.process(_job([f"b{i}" for i in range(6)]), job_id="job-b"),
    )

    assert len(gateway.calls) == 12
    assert gateway.peak_in_flight == 2
    assert limiter.peak == 2
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_handle_parses_queue_job_and_returns_summary() -> None:
    dispatcher = _dispatcher(FakePushGateway(), batch_size=2)
    job = QueuedJob(
        id="job-6",
        name="send_push",
        data={"tokens": ["t1", "t2", "t3"], "payload": {"title": "Hi", "text": "There"}, "locale": "en"},
        attempt=1,
    )

    assert await dispatcher.handle(job) == {
        "totalTokens": 3,
        "successfulBatches": 2,
        "failedBatches": 0,
        "invalidTokens": 0,
    }


@pytest.mark.asyncio
async def test_handle_raises_for_malformed_job() -> None:
    dispatcher = _dispatcher(FakePushGateway())
    job = QueuedJob(id="job-7", name="send_push", data={"tokens": []}, attempt=1)

    with pytest.raises(MalformedJobError):
        await dispatcher.handle(job)
