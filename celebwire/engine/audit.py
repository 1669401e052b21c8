"""Fetch audit trail: one record per cycle plus history and statistics reads."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from ..logging_conf import component_logger
from ..models import FetchCycleResult, FetchStatus, utcnow
from .store import FetchLogRepository


class FetchAudit:
    def __init__(
        self,
        repository: FetchLogRepository,
        *,
        interval: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.repository = repository
        self.interval = interval
        self.clock = clock
        self.logger = logger or component_logger("audit")

    def next_due(self, fetched_at: datetime) -> datetime:
        return fetched_at + self.interval

    async def record(self, result: FetchCycleResult) -> None:
        await self.repository.insert(result.to_document())
        self.logger.info(
            "cycle_recorded",
            status=result.status.value,
            duration_ms=result.duration_ms,
            new_articles=result.new_articles_added,
            duplicates=result.duplicates_found,
            api_calls=result.api_calls_used,
            error=result.error,
        )

    async def last_successful(self) -> FetchCycleResult | None:
        document = await self.repository.latest(FetchStatus.SUCCESS)
        return FetchCycleResult.from_document(document) if document else None

    async def latest(self) -> FetchCycleResult | None:
        document = await self.repository.latest()
        return FetchCycleResult.from_document(document) if document else None

    async def recent(self, limit: int = 10) -> list[FetchCycleResult]:
        documents = await self.repository.list(limit=limit)
        return [FetchCycleResult.from_document(doc) for doc in documents]

    async def failures(self, limit: int = 10) -> list[FetchCycleResult]:
        documents = await self.repository.list(FetchStatus.FAILED, limit=limit)
        return [FetchCycleResult.from_document(doc) for doc in documents]

    async def history(
        self, status: FetchStatus | None = None, page: int = 1, limit: int = 10
    ) -> dict[str, Any]:
        """Paginated history, newest first, optionally filtered by status."""

        page = max(1, page)
        limit = max(1, limit)
        total = await self.repository.count(status)
        documents = await self.repository.list(status, skip=(page - 1) * limit, limit=limit)
        return {
            "items": [FetchCycleResult.from_document(doc) for doc in documents],
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    async def statistics(self) -> dict[str, Any]:
        return await self.repository.statistics()

    async def is_fetch_due(self, now: datetime | None = None) -> bool:
        """True when nothing succeeded yet or the last success's due time has passed."""

        last = await self.last_successful()
        if last is None:
            return True
        return (now or self.clock()) >= last.next_fetch_due

    async def prune(self, older_than_days: int = 90) -> int:
        cutoff = self.clock() - timedelta(days=older_than_days)
        removed = await self.repository.delete_before(cutoff)
        self.logger.info("fetch_logs_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed


__all__ = ["FetchAudit"]
