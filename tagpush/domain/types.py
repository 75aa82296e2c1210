from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


Platform = Literal["ios", "android"]
PLATFORMS: tuple[str, ...] = ("ios", "android")


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    # Read-only snapshot of a registry row as seen by the dispatch pipeline.
    token: str | None
    platform: str = "ios"
    tags: tuple[str, ...] = ()
    locale: str | None = "en"
    last_active_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PushContent:
    # Single-locale notification content carried by a job.
    title: str
    text: str
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "text": self.text}
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(slots=True)
class BatchResult:
    # invalid_tokens are permanent rejections; failed_tokens hit transport errors.
    invalid_tokens: set[str] = field(default_factory=set)
    failed_tokens: list[str] = field(default_factory=list)


@dataclass(slots=True)
class JobSummary:
    total_tokens: int
    successful_batches: int = 0
    failed_batches: int = 0
    invalid_tokens: list[str] = field(default_factory=list)

    @property
    def invalid_token_count(self) -> int:
        return len(self.invalid_tokens)

    @property
    def all_batches_failed(self) -> bool:
        return self.failed_batches > 0 and self.successful_batches == 0

    def to_dict(self) -> dict[str, int]:
        # Matches the summary shape workers persist for completed jobs.
        return {
            "totalTokens": self.total_tokens,
            "successfulBatches": self.successful_batches,
            "failedBatches": self.failed_batches,
            "invalidTokens": self.invalid_token_count,
        }


@dataclass(frozen=True, slots=True)
class DispatchResult:
    total_matched_devices: int
    jobs_enqueued: int
    locales: tuple[str, ...] = ()

    def to_response(self) -> dict[str, Any]:
        # Literal response shape consumed by API clients; keep keys stable.
        if self.total_matched_devices == 0:
            return {
                "message": "No devices found for the specified tags",
                "totalUsers": 0,
                "jobsAdded": 0,
                "locales": [],
            }
        return {
            "message": "Push notification jobs queued successfully",
            "totalUsers": self.total_matched_devices,
            "jobsAdded": self.jobs_enqueued,
            "locales": list(self.locales),
        }
