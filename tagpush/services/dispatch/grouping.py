from __future__ import annotations

import logging
from typing import Iterable

from tagpush.core.config import DEFAULT_LOCALE
from tagpush.domain.types import DeviceRecord
from tagpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def group_by_locale(records: Iterable[DeviceRecord | None]) -> dict[str, list[str]]:
    """Bucket device tokens by locale.

    Records without a token are skipped and counted; records without a locale
    land in the default locale. Token order within a bucket follows input
    order and duplicates are kept.
    """
    grouped: dict[str, list[str]] = {}
    skipped = 0
    for record in records:
        if record is None or not record.token:
            skipped += 1
            continue
        locale = record.locale or DEFAULT_LOCALE
        grouped.setdefault(locale, []).append(record.token)
    if skipped:
        increment_counter("dispatch_records_skipped_total", skipped)
        logger.warning("skipped %d device records without a token", skipped)
    return grouped
