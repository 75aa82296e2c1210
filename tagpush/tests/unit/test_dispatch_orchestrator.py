from __future__ import annotations

from typing import Any, Sequence

import pytest

from tagpush.core.errors import QueueUnavailableError, ValidationError
from tagpush.domain.types import DeviceRecord
from tagpush.services.dispatch.orchestrator import DispatchOrchestrator
from tagpush.services.queue import EnqueueOptions


class StubRegistry:
    def __init__(self, records: list[DeviceRecord]) -> None:
        self.records = records
        self.queries: list[list[str]] = []

    async def find_by_matching_tags(self, tags: Sequence[str]) -> list[DeviceRecord]:
        self.queries.append(list(tags))
        wanted = set(tags)
        return [record for record in self.records if wanted.intersection(record.tags)]


class RecordingQueue:
    def __init__(self, fail_after: int | None = None) -> None:
        self.jobs: list[tuple[str, dict[str, Any], EnqueueOptions | None]] = []
        self.fail_after = fail_after

    async def enqueue(self, job_name: str, job_data: dict[str, Any], options: EnqueueOptions | None = None) -> str:
        if self.fail_after is not None and len(self.jobs) >= self.fail_after:
            raise QueueUnavailableError("queue down")
        self.jobs.append((job_name, job_data, options))
        return options.job_id if options and options.job_id else "job"


def _sports_devices() -> list[DeviceRecord]:
    return [
        DeviceRecord(token="en-1", tags=("sports",), locale="en"),
        DeviceRecord(token="en-2", tags=("sports", "news"), locale="en"),
        DeviceRecord(token="es-1", tags=("sports",), locale="es"),
        DeviceRecord(token="fr-1", tags=("weather",), locale="fr"),
    ]


@pytest.mark.asyncio
async def test_dispatch_skips_locales_without_content() -> None:
    queue = RecordingQueue()
    orchestrator = DispatchOrchestrator(StubRegistry(_sports_devices()), queue)

    result = await orchestrator.dispatch(["sports"], {"en": {"title": "Goal", "text": "1-0"}})

    assert result.total_matched_devices == 3
    assert result.jobs_enqueued == 1
    assert set(result.locales) == {"en", "es"}
    job_name, job_data, options = queue.jobs[0]
    assert job_name == "send_push"
    assert job_data["tokens"] == ["en-1", "en-2"]
    assert job_data["payload"] == {"title": "Goal", "text": "1-0", "metadata": None}
    assert job_data["locale"] == "en"
    assert options.job_id.endswith(":en")


@pytest.mark.asyncio
async def test_dispatch_enqueues_one_job_per_locale_with_content() -> None:
    queue = RecordingQueue()
    orchestrator = DispatchOrchestrator(StubRegistry(_sports_devices()), queue)

    result = await orchestrator.dispatch(
        ["sports", "weather"],
        {
            "en": {"title": "Goal", "text": "1-0"},
            "es": {"title": "Gol", "text": "1-0"},
            "fr": {"title": "But", "text": "1-0"},
        },
        {"match": "42"},
    )

    assert result.to_response() == {
        "message": "Push notification jobs queued successfully",
        "totalUsers": 4,
        "jobsAdded": 3,
        "locales": ["en", "es", "fr"],
    }
    assert {data["locale"] for _, data, _ in queue.jobs} == {"en", "es", "fr"}
    assert all(data["payload"]["metadata"] == {"match": "42"} for _, data, _ in queue.jobs)
    # All jobs of one dispatch share its id.
    assert len({data["dispatch_id"] for _, data, _ in queue.jobs}) == 1


@pytest.mark.asyncio
async def test_dispatch_with_no_matches_enqueues_nothing() -> None:
    queue = RecordingQueue()
    orchestrator = DispatchOrchestrator(StubRegistry(_sports_devices()), queue)

    result = await orchestrator.dispatch(["unknown"], {"en": {"title": "Hi", "text": "There"}})

    assert result.to_response() == {
        "message": "No devices found for the specified tags",
        "totalUsers": 0,
        "jobsAdded": 0,
        "locales": [],
    }
    assert queue.jobs == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("tags", "content", "message"),
    [
        ([], {"en": {"title": "a", "text": "b"}}, "tags must be a non-empty array"),
        ("sports", {"en": {"title": "a", "text": "b"}}, "tags must be a non-empty array"),
        (None, {"en": {"title": "a", "text": "b"}}, "tags must be a non-empty array"),
        (["sports", 3], {"en": {"title": "a", "text": "b"}}, "All tags must be strings"),
        (["sports"], {"en": {"title": "a"}}, "localesContent.en.title and text must be strings"),
    ],
)
async def test_dispatch_validates_before_any_io(tags, content, message: str) -> None:
    registry = StubRegistry(_sports_devices())
    queue = RecordingQueue()
    orchestrator = DispatchOrchestrator(registry, queue)

    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.dispatch(tags, content)

    assert str(excinfo.value) == message
    assert registry.queries == []
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_dispatch_keeps_jobs_enqueued_before_queue_failure() -> None:
    queue = RecordingQueue(fail_after=1)
    orchestrator = DispatchOrchestrator(StubRegistry(_sports_devices()), queue)

    with pytest.raises(QueueUnavailableError):
        await orchestrator.dispatch(
            ["sports"],
            {"en": {"title": "Goal", "text": "1-0"}, "es": {"title": "Gol", "text": "1-0"}},
        )

    assert len(queue.jobs) == 1


@pytest.mark.asyncio
async def test_fallback_policy_folds_missing_locales_into_fallback_job() -> None:
    queue = RecordingQueue()
    orchestrator = DispatchOrchestrator(
        StubRegistry(_sports_devices()),
        queue,
        missing_locale_policy="fallback",
        fallback_locale="en",
    )

    result = await orchestrator.dispatch(["sports", "weather"], {"en": {"title": "Goal", "text": "1-0"}})

    assert result.jobs_enqueued == 1
    assert set(result.locales) == {"en", "es", "fr"}
    assert queue.jobs[0][1]["tokens"] == ["en-1", "en-2", "es-1", "fr-1"]


@pytest.mark.asyncio
async def test_dedupe_flag_removes_repeated_tokens() -> None:
    records = [
        DeviceRecord(token="dup", tags=("sports",), locale="en"),
        DeviceRecord(token="dup", tags=("sports",), locale="en"),
        DeviceRecord(token="other", tags=("sports",), locale="en"),
    ]
    content = {"en": {"title": "Goal", "text": "1-0"}}

    keep_queue = RecordingQueue()
    await DispatchOrchestrator(StubRegistry(records), keep_queue).dispatch(["sports"], content)
    dedupe_queue = RecordingQueue()
    await DispatchOrchestrator(StubRegistry(records), dedupe_queue, dedupe_tokens=True).dispatch(
        ["sports"], content
    )

    assert keep_queue.jobs[0][1]["tokens"] == ["dup", "dup", "other"]
    assert dedupe_queue.jobs[0][1]["tokens"] == ["dup", "other"]


def test_unknown_missing_locale_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        DispatchOrchestrator(StubRegistry([]), RecordingQueue(), missing_locale_policy="guess")
