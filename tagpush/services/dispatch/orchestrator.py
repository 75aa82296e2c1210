from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Sequence
from uuid import uuid4

from tagpush.core.config import Settings, get_settings
from tagpush.core.errors import QueueUnavailableError, ValidationError
from tagpush.domain.types import DispatchResult, PushContent
from tagpush.services.dispatch.grouping import group_by_locale
from tagpush.services.dispatch.payload import DispatchPayload, build_payload
from tagpush.services.queue import EnqueueOptions, JobQueue, PushJobContent, PushJobPayload
from tagpush.services.registry import DeviceRegistry, find_by_tags
from tagpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def validate_tags(tags: Any) -> list[str]:
    if isinstance(tags, (str, bytes)) or not isinstance(tags, (list, tuple, set, frozenset)):
        raise ValidationError("tags must be a non-empty array")
    tag_list = list(tags)
    if not tag_list:
        raise ValidationError("tags must be a non-empty array")
    if not all(isinstance(tag, str) for tag in tag_list):
        raise ValidationError("All tags must be strings")
    return tag_list


def _dedupe(tokens: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(tokens))


class DispatchOrchestrator:
    """Turns a tag broadcast into one queued job per locale.

    The registry and queue are injected at construction; nothing here opens
    connections of its own.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        queue: JobQueue,
        *,
        job_name: str = "send_push",
        missing_locale_policy: str = "drop",
        fallback_locale: str = "en",
        dedupe_tokens: bool = False,
    ) -> None:
        if missing_locale_policy not in {"drop", "fallback"}:
            raise ValueError(f"Unsupported missing-locale policy: {missing_locale_policy}")
        self._registry = registry
        self._queue = queue
        self._job_name = job_name
        self._missing_locale_policy = missing_locale_policy
        self._fallback_locale = fallback_locale
        self._dedupe_tokens = dedupe_tokens

    @classmethod
    def from_settings(
        cls,
        registry: DeviceRegistry,
        queue: JobQueue,
        settings: Settings | None = None,
    ) -> "DispatchOrchestrator":
        settings = settings or get_settings()
        return cls(
            registry,
            queue,
            job_name=settings.push_job_name,
            missing_locale_policy=settings.dispatch_missing_locale_policy,
            fallback_locale=settings.dispatch_fallback_locale,
            dedupe_tokens=settings.dispatch_dedupe_tokens,
        )

    def plan_jobs(
        self,
        grouped: Mapping[str, list[str]],
        payload: DispatchPayload,
    ) -> list[tuple[str, list[str], PushContent]]:
        # Locales without content are dropped, or folded into the fallback locale's job.
        planned: dict[str, tuple[list[str], PushContent]] = {}
        for locale, tokens in grouped.items():
            target = locale
            content = payload.content_for(locale)
            if content is None and self._missing_locale_policy == "fallback":
                target = self._fallback_locale
                content = payload.content_for(target)
            if content is None:
                logger.info("no content for locale %s; skipping %d devices", locale, len(tokens))
                increment_counter("dispatch_devices_skipped_total", len(tokens))
                continue
            planned.setdefault(target, ([], content))[0].extend(tokens)
        return [
            (locale, _dedupe(tokens) if self._dedupe_tokens else tokens, content)
            for locale, (tokens, content) in planned.items()
        ]

    async def dispatch(
        self,
        tags: Any,
        locales_content: Any,
        metadata: Mapping[str, Any] | None = None,
    ) -> DispatchResult:
        # Validate everything before touching the registry or the queue.
        tag_list = validate_tags(tags)
        payload = build_payload(locales_content, metadata)

        devices = await find_by_tags(self._registry, tag_list)
        if not devices:
            logger.info("no devices matched tags %s", tag_list)
            return DispatchResult(total_matched_devices=0, jobs_enqueued=0, locales=())

        grouped = group_by_locale(devices)
        dispatch_id = uuid4().hex
        jobs_enqueued = 0
        for locale, tokens, content in self.plan_jobs(grouped, payload):
            job_data = PushJobPayload(
                tokens=tokens,
                payload=PushJobContent(title=content.title, text=content.text, metadata=content.metadata),
                locale=locale,
                dispatch_id=dispatch_id,
            ).model_dump()
            try:
                await self._queue.enqueue(
                    self._job_name,
                    job_data,
                    EnqueueOptions(job_id=f"{dispatch_id}:{locale}"),
                )
            except QueueUnavailableError:
                # Jobs already queued stay queued; there is no rollback across insertions.
                logger.error(
                    "dispatch %s stopped after %d enqueued job(s) at locale %s",
                    dispatch_id,
                    jobs_enqueued,
                    locale,
                )
                raise
            jobs_enqueued += 1

        increment_counter("dispatch_jobs_enqueued_total", jobs_enqueued)
        logger.info(
            "dispatch %s: %d devices matched, %d jobs enqueued across locales %s",
            dispatch_id,
            len(devices),
            jobs_enqueued,
            list(grouped),
        )
        return DispatchResult(
            total_matched_devices=len(devices),
            jobs_enqueued=jobs_enqueued,
            locales=tuple(grouped),
        )
