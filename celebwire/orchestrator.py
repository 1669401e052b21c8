"""Fetch-cycle orchestrator wiring planning, fetching, dedup, invalidation and audit."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import structlog

from .config import PipelineConfig
from .engine import (
    BatchPlanner,
    CacheLayer,
    CredentialPool,
    Deduplicator,
    FetchAudit,
    FetchExecutor,
    IngestReport,
    StartupMode,
    StartupReport,
    assign_entities,
)
from .errors import ErrorKind, PipelineError
from .infra.storage import StateStore
from .logging_conf import component_logger
from .models import Batch, FetchCycleResult, FetchStatus, RateLimitInfo, RotationState, utcnow
from .roster import EntityRoster


class Stage(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    FETCHING = "fetching"
    INGESTING = "ingesting"
    INVALIDATING = "invalidating"
    AUDITING = "auditing"


class TriggerSource(str, Enum):
    TIMER = "timer"
    MANUAL = "manual"
    STARTUP = "startup"


@dataclass(slots=True)
class TriggerResult:
    """Answer to a trigger: accepted, or rejected with the reason and current stage."""

    accepted: bool
    stage: Stage
    reason: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)
    result: FetchCycleResult | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"accepted": self.accepted, "stage": self.stage.value}
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(slots=True)
class _CycleProgress:
    """Counters gathered while a cycle runs; survive a mid-cycle failure."""

    batch: Batch | None = None
    next_rotation: RotationState | None = None
    api_calls: int = 0
    articles_count: int = 0
    rate_limit: RateLimitInfo | None = None
    report: IngestReport = field(default_factory=IngestReport)
    status: FetchStatus = FetchStatus.SUCCESS
    error: str | None = None
    invalidated: bool = False


class Orchestrator:
    """Run at most one fetch cycle at a time; every attempt ends in one audit record.

    Triggers from the timer and from operators share ``_gate``. A trigger that
    finds the gate held is rejected and logged as skipped, never queued. The
    credential pool and rotation cursor are only mutated while the gate is held.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        roster: EntityRoster,
        pool: CredentialPool,
        planner: BatchPlanner,
        executor: FetchExecutor,
        deduplicator: Deduplicator,
        cache: CacheLayer,
        audit: FetchAudit,
        state_store: StateStore,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.roster = roster
        self.pool = pool
        self.planner = planner
        self.executor = executor
        self.deduplicator = deduplicator
        self.cache = cache
        self.audit = audit
        self.state_store = state_store
        self.clock = clock
        self.logger = logger or component_logger("orchestrator")
        self._gate = asyncio.Lock()
        self._stage = Stage.IDLE
        self.mode: StartupMode | None = None
        self.last_result: FetchCycleResult | None = None

    # ------------------------------------------------------------------
    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def busy(self) -> bool:
        return self._gate.locked()

    @property
    def limited(self) -> bool:
        return self.mode is StartupMode.LIMITED

    def _enter(self, stage: Stage) -> None:
        self._stage = stage
        self.logger.debug("stage_changed", stage=stage.value)

    # ------------------------------------------------------------------
    async def startup(self) -> StartupReport:
        """Credential startup check; fatal errors propagate to the caller."""

        report = await self.pool.startup_check()
        self.mode = report.mode
        if report.ingestion_enabled:
            self.logger.info("ingestion_enabled", key_id=report.key_id)
        else:
            self.logger.warning("ingestion_disabled", reason="limited_mode", failures=len(report.failures))
        return report

    async def _recheck_limited(self) -> bool:
        """Retry the startup check while in limited mode; True once ingestion may run."""

        try:
            report = await self.pool.startup_check()
        except PipelineError as exc:
            self.logger.error("limited_mode_recheck_failed", error=str(exc), error_kind=exc.kind.value)
            return False
        self.mode = report.mode
        if report.ingestion_enabled:
            self.logger.info("limited_mode_cleared", key_id=report.key_id)
        return report.ingestion_enabled

    async def _admit(self, source: TriggerSource) -> TriggerResult | None:
        """Acquire the gate or explain why not. ``None`` means the caller now holds it."""

        if self._gate.locked():
            self.logger.warning("cycle_skipped", trigger=source.value, reason="busy", stage=self._stage.value)
            return TriggerResult(accepted=False, stage=self._stage, reason="busy")
        await self._gate.acquire()
        if self.limited:
            cleared = source is TriggerSource.TIMER and await self._recheck_limited()
            if not cleared:
                self._gate.release()
                self.logger.warning("cycle_skipped", trigger=source.value, reason="limited_mode")
                return TriggerResult(accepted=False, stage=self._stage, reason="limited_mode")
        return None

    async def trigger(self, source: TriggerSource = TriggerSource.MANUAL) -> TriggerResult:
        """Start a cycle in the background and return immediately."""

        rejected = await self._admit(source)
        if rejected is not None:
            return rejected
        task = asyncio.create_task(self._run_locked(source), name=f"fetch-cycle-{source.value}")
        self.logger.info("cycle_accepted", trigger=source.value)
        return TriggerResult(accepted=True, stage=Stage.PLANNING, task=task)

    async def run_cycle(self, source: TriggerSource = TriggerSource.TIMER) -> TriggerResult:
        """Run a cycle to completion; used by the timer and by tests."""

        rejected = await self._admit(source)
        if rejected is not None:
            return rejected
        result = await self._run_locked(source)
        return TriggerResult(accepted=True, stage=Stage.IDLE, result=result)

    async def run_initial_fetch_if_due(self) -> TriggerResult | None:
        if not await self.audit.is_fetch_due(self.clock()):
            last = await self.audit.last_successful()
            self.logger.info(
                "initial_fetch_not_due",
                next_fetch_due=last.next_fetch_due.isoformat() if last else None,
            )
            return None
        self.logger.info("initial_fetch_due")
        return await self.run_cycle(TriggerSource.STARTUP)

    async def _run_locked(self, source: TriggerSource) -> FetchCycleResult:
        try:
            return await self._cycle(source)
        finally:
            self._enter(Stage.IDLE)
            self._gate.release()

    # ------------------------------------------------------------------
    async def _cycle(self, source: TriggerSource) -> FetchCycleResult:
        fetched_at = self.clock()
        started = time.perf_counter()
        progress = _CycleProgress()
        self.logger.info("cycle_started", trigger=source.value)
        try:
            await self._run_stages(progress)
        except Exception as exc:  # noqa: BLE001
            kind = exc.kind if isinstance(exc, PipelineError) else ErrorKind.INTERNAL
            progress.error = f"{kind.value}: {exc}"
            progress.status = FetchStatus.PARTIAL if progress.report.new_count else FetchStatus.FAILED
            self.logger.exception("cycle_stage_failed", stage=self._stage.value, error_kind=kind.value)
            if progress.report.new_count and not progress.invalidated:
                await self._invalidate(progress)

        self._persist_rotation(progress)

        self._enter(Stage.AUDITING)
        batch = progress.batch
        result = FetchCycleResult(
            fetched_at=fetched_at,
            next_fetch_due=self.audit.next_due(fetched_at),
            status=progress.status,
            duration_ms=max(0, int((time.perf_counter() - started) * 1000)),
            api_calls_used=progress.api_calls,
            duplicates_found=progress.report.duplicate_count,
            new_articles_added=progress.report.new_count,
            articles_count=progress.articles_count,
            error=progress.error,
            rate_limit=progress.rate_limit,
            entities=batch.names if batch else [],
            batch_index=batch.index if batch else None,
            total_batches=batch.total if batch else None,
            trigger=source.value,
        )
        try:
            await self.audit.record(result)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("audit_record_failed", error=str(exc))
        self.last_result = result
        self.logger.info(
            "cycle_finished",
            status=result.status.value,
            new_articles=result.new_articles_added,
            duplicates=result.duplicates_found,
            api_calls=result.api_calls_used,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run_stages(self, progress: _CycleProgress) -> None:
        self._enter(Stage.PLANNING)
        entities = await self.roster.active_entities()
        rotation = self.state_store.load_rotation()
        batch, progress.next_rotation = self.planner.plan_cycle(
            entities, rotation, self.config.batching.batch_size
        )
        if batch is None:
            progress.status = FetchStatus.FAILED
            progress.error = "No active entities to fetch"
            self.logger.warning("cycle_no_entities")
            return
        progress.batch = batch
        self.logger.info("batch_planned", batch=batch.index, total=batch.total, size=len(batch.entities))

        self._enter(Stage.FETCHING)
        self.pool.apply(await self.pool.recheck_invalid())
        raw = await self.executor.execute(batch, self.pool)
        self.pool.apply(raw.updates)
        progress.api_calls = raw.api_calls
        progress.rate_limit = raw.rate_limit
        progress.articles_count = len(raw.items)
        if not raw.ok:
            progress.status = FetchStatus.FAILED
            kind = raw.error_kind or ErrorKind.INTERNAL
            progress.error = f"{kind.value}: {raw.error}"
            return

        self._enter(Stage.INGESTING)
        assignment = assign_entities(raw.items, batch, self.config.fetch.max_per_entity)
        if assignment.unmatched or assignment.capped:
            self.logger.info("items_filtered", unmatched=assignment.unmatched, capped=assignment.capped)
        for entity in batch.entities:
            items = assignment.by_entity.get(entity.id) or []
            if items:
                progress.report.merge(await self.deduplicator.ingest(items, entity))
        if progress.report.rejected:
            self.logger.warning("items_rejected", count=len(progress.report.rejected))
        if progress.report.failures:
            succeeded = progress.report.new_count + progress.report.duplicate_count
            progress.status = FetchStatus.PARTIAL if succeeded else FetchStatus.FAILED
            progress.error = f"{ErrorKind.STORE_WRITE.value}: {len(progress.report.failures)} item(s) failed to store"

        if progress.report.new_count:
            await self._invalidate(progress)

    async def _invalidate(self, progress: _CycleProgress) -> None:
        self._enter(Stage.INVALIDATING)
        progress.invalidated = True
        try:
            await self.cache.invalidate_news()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("cache_invalidation_failed", error=str(exc))

    def _persist_rotation(self, progress: _CycleProgress) -> None:
        if progress.next_rotation is None:
            return
        next_rotation = progress.next_rotation
        failed = progress.status is not FetchStatus.SUCCESS
        if progress.batch is not None and failed and not self.config.batching.advance_on_failure:
            next_rotation = self.planner.hold(progress.batch)
        try:
            self.state_store.save_rotation(next_rotation, self.clock())
        except Exception as exc:  # noqa: BLE001
            self.logger.error("rotation_save_failed", error=str(exc))

    # ------------------------------------------------------------------
    async def reset_credential_usage(self) -> None:
        async with self._gate:
            self.pool.reset_usage()

    async def revalidate_credentials(self) -> dict[str, str]:
        async with self._gate:
            outcomes = await self.pool.force_revalidate()
            if self.limited and self.pool.best_available() is not None:
                self.mode = StartupMode.NORMAL
                self.logger.info("limited_mode_cleared", reason="revalidated")
        return {key_id: outcome.value for key_id, outcome in outcomes.items()}

    async def cleanup(self) -> int:
        return await self.audit.prune(self.config.audit.retention_days)

    def status(self) -> dict[str, Any]:
        return {
            "stage": self._stage.value,
            "busy": self.busy,
            "mode": (self.mode or StartupMode.NORMAL).value,
            "rotation": _rotation_dict(self.state_store.load_rotation()),
            "last_cycle": self.last_result.to_document() if self.last_result else None,
            "credentials": self.pool.health_summary(),
        }


def _rotation_dict(state: RotationState) -> dict[str, int]:
    return {"cursor": state.cursor, "total_batches": state.total_batches}


__all__ = ["Orchestrator", "Stage", "TriggerResult", "TriggerSource"]
