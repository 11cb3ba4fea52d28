"""
linkrewards/worker/scheduler.py

Interval-driven rewards pipeline.

Each tick runs at most one epoch through a strictly sequential state
machine:

    IDLE -> FETCHING -> AGGREGATING -> BUILDING_INPUTS
         -> ALLOCATION_PENDING -> COMMITTED -> IDLE
    (any stage) -> FAILED -> IDLE

The target epoch is the last closed one (current - 1). SchedulerState
is passed into run_once() and a new state is returned; it is persisted
only after a run fully commits or fully fails, never when a run is
cancelled mid-stage. Consecutive failures reaching the ceiling halt the
loop with SchedulerHaltedError.

Usage:
    scheduler = Scheduler(settings, DirectoryFetcher(settings.fetcher))
    await scheduler.run()                 # loop until halted or cancelled
    result = await scheduler.run_once(SchedulerState())
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import trio

from ..config import Settings
from ..errors import CacheError, CacheNotFoundError, SchedulerError, SchedulerHaltedError
from ..ingestor.fetcher import Fetcher
from ..calculator.engine import Allocation, AllocationEngine, load_engine, run_engine
from ..calculator.inputs import ShapleyInputs, build_reward_inputs
from ..processor.internet import InternetTelemetryAggregator
from ..processor.telemetry import TelemetryAggregator
from ..store.cache import CacheManager
from ..store.data_store import CachedSnapshot, DataStore, ProcessedMetrics
from ..metrics import PipelineMetrics
from .state import SchedulerState

logger = logging.getLogger("linkrewards.worker.scheduler")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class RunStage(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    BUILDING_INPUTS = "building_inputs"
    ALLOCATION_PENDING = "allocation_pending"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class RunResult:
    """Outcome of one tick."""
    state: SchedulerState
    stage: RunStage
    epoch: Optional[int] = None
    processed: bool = False
    dry_run: bool = False
    from_cache: bool = False
    inputs: Optional[ShapleyInputs] = None
    allocation: Optional[Allocation] = None
    error: Optional[SchedulerError] = None

    @property
    def failed(self) -> bool:
        return self.stage == RunStage.FAILED


Publisher = Callable[[CachedSnapshot], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SCHEDULER
# ============================================================================

class Scheduler:
    """Drives fetch, aggregation, input building and allocation per epoch."""

    def __init__(
        self,
        settings: Settings,
        fetcher: Fetcher,
        cache: Optional[CacheManager] = None,
        engine: Optional[AllocationEngine] = None,
        publisher: Optional[Publisher] = None,
        metrics: Optional[PipelineMetrics] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.cache = cache or CacheManager(settings.cache_dir)
        if engine is None and settings.scheduler.engine:
            engine = load_engine(settings.scheduler.engine)
        self.engine = engine
        self.publisher = publisher
        self.metrics = metrics or PipelineMetrics()
        self.clock = clock
        self.stage = RunStage.IDLE
        self._running = False

    @property
    def state_path(self) -> Path:
        return Path(self.settings.scheduler.state_file)

    @property
    def dry_run(self) -> bool:
        return self.settings.scheduler.dry_run

    def _enter(self, stage: RunStage, epoch: Optional[int]) -> None:
        self.stage = stage
        if epoch is None:
            logger.info(f"Stage: {stage.value}")
        else:
            logger.info(f"Epoch {epoch}: {stage.value}")

    # ------------------------------------------------------------ stages

    async def _target_epoch(self) -> Optional[int]:
        current = await self.fetcher.current_epoch()
        if current == 0:
            return None
        return current - 1

    def _cached_snapshot(self, epoch: int) -> Optional[CachedSnapshot]:
        """A valid cached snapshot for epoch, or None. Corruption means refetch."""
        try:
            return self.cache.load_snapshot(epoch)
        except CacheNotFoundError:
            return None
        except CacheError as e:
            logger.warning(f"Cached snapshot for epoch {epoch} unusable, refetching: {e}")
            return None

    def _aggregate(self, store: DataStore) -> None:
        sched = self.settings.scheduler
        store.topology.validate_references()
        private = TelemetryAggregator(
            self.settings.private,
            history=self.cache.history("link_stats"),
            max_workers=sched.aggregation_workers,
        )
        internet = InternetTelemetryAggregator(
            self.settings.internet,
            history=self.cache.history("internet_stats"),
            max_workers=sched.aggregation_workers,
        )
        store.link_stats = private.aggregate(
            store.telemetry_samples, store.topology.expected_private_keys(), store.window, store.epoch
        )
        store.internet_stats = internet.aggregate(
            store.internet_samples, internet.expected_keys(store.epoch), store.window, store.epoch
        )

    def _build_inputs(self, store: DataStore) -> ShapleyInputs:
        return build_reward_inputs(
            store.topology,
            store.link_stats,
            store.internet_stats,
            self.settings.shapley,
            self.settings.demand,
        )

    # -------------------------------------------------------------- runs

    async def run_once(self, state: SchedulerState) -> RunResult:
        """
        Process the last closed epoch if it has not been processed yet.

        Failures are contained: the returned result carries the wrapped
        SchedulerError and the incremented, persisted state.
        """
        if self._running:
            raise RuntimeError("a scheduler run is already in progress")
        self._running = True
        try:
            return await self._run_once(state)
        finally:
            self._running = False
            self.stage = RunStage.IDLE

    async def _run_once(self, state: SchedulerState) -> RunResult:
        sched = self.settings.scheduler
        state = state.record_check(self.clock())
        started = trio.current_time()
        epoch = None

        try:
            self._enter(RunStage.FETCHING, epoch)
            with trio.fail_after(sched.fetch_timeout):
                epoch = await self._target_epoch()

            if epoch is None:
                logger.debug("Current epoch is 0, nothing to process yet")
                return self._skip(state, epoch)

            logger.info(f"Target epoch for processing: {epoch}")
            if not state.should_process_epoch(epoch):
                logger.info(
                    f"Epoch {epoch} already processed (last processed: "
                    f"{state.last_processed_epoch}), waiting for new epoch"
                )
                return self._skip(state, epoch)

            snapshot = self._cached_snapshot(epoch)
            if snapshot is not None and snapshot.is_committed and not self.dry_run:
                logger.info(f"Epoch {epoch} already committed in cache, marking as processed")
                state = state.record_success(epoch, self.clock())
                state.save(self.state_path)
                return RunResult(
                    state=state,
                    stage=RunStage.COMMITTED,
                    epoch=epoch,
                    from_cache=True,
                    inputs=snapshot.shapley_inputs,
                    allocation=snapshot.allocation,
                )

            if snapshot is not None:
                logger.info(f"Using cached data for epoch {epoch}, skipping fetch")
                store = snapshot.store
            else:
                with trio.fail_after(sched.fetch_timeout):
                    fetched = await self.fetcher.fetch(epoch)
                store = DataStore.from_fetch(fetched)

            self._enter(RunStage.AGGREGATING, epoch)
            with trio.fail_after(sched.aggregation_timeout):
                await trio.to_thread.run_sync(self._aggregate, store, abandon_on_cancel=True)

            self._enter(RunStage.BUILDING_INPUTS, epoch)
            inputs = self._build_inputs(store)
            processed = ProcessedMetrics.compute(store, inputs)
            self.cache.save(store, processed_metrics=processed, shapley_inputs=inputs)
            self.metrics.record_inputs(inputs.counts())

            self._enter(RunStage.ALLOCATION_PENDING, epoch)
            allocation = None
            if self.engine is not None:
                with trio.fail_after(sched.allocation_timeout):
                    allocation = await trio.to_thread.run_sync(
                        run_engine, self.engine, inputs.private_links, inputs.demands,
                        abandon_on_cancel=True,
                    )
            else:
                logger.info(f"No allocation engine configured, committing inputs for epoch {epoch}")

            duration = trio.current_time() - started
            if self.dry_run:
                logger.info(f"DRY RUN: computed epoch {epoch}, skipping commit and publish")
                state = replace(state, consecutive_failures=0)
                state.save(self.state_path)
                return RunResult(
                    state=state,
                    stage=RunStage.IDLE,
                    epoch=epoch,
                    processed=True,
                    dry_run=True,
                    inputs=inputs,
                    allocation=allocation,
                )

            snapshot = CachedSnapshot(
                store=store,
                processed_metrics=processed,
                shapley_inputs=inputs,
                allocation=allocation,
                committed=True,
            )
            # the committed marker is written only after publish returns
            if self.publisher is not None:
                await trio.to_thread.run_sync(self.publisher, snapshot)
            self.cache.save_snapshot(snapshot)

            self._enter(RunStage.COMMITTED, epoch)
            state = state.record_success(epoch, self.clock())
            state.save(self.state_path)
            self.metrics.record_success(epoch, duration)
            return RunResult(
                state=state,
                stage=RunStage.COMMITTED,
                epoch=epoch,
                processed=True,
                inputs=inputs,
                allocation=allocation,
            )

        except Exception as e:
            error = SchedulerError(epoch, self.stage.value, e)
            self.stage = RunStage.FAILED
            logger.error(f"Run failed: {error}")
            state = state.record_failure()
            state.save(self.state_path)
            self.metrics.record_failure(error.stage, state.consecutive_failures, trio.current_time() - started)
            if not state.is_in_failure_state(sched.max_consecutive_failures):
                logger.warning("Will retry on next interval")
            return RunResult(state=state, stage=RunStage.FAILED, epoch=epoch, error=error)

    def _skip(self, state: SchedulerState, epoch: Optional[int]) -> RunResult:
        state.save(self.state_path)
        self.metrics.record_skip()
        return RunResult(state=state, stage=RunStage.IDLE, epoch=epoch)

    def _check_ceiling(self, state: SchedulerState) -> None:
        max_failures = self.settings.scheduler.max_consecutive_failures
        if state.is_in_failure_state(max_failures):
            logger.critical(
                f"Scheduler is in failure state ({state.consecutive_failures} consecutive "
                f"failures), halting until operator intervention"
            )
            raise SchedulerHaltedError(state.consecutive_failures, max_failures)

    async def run(self, state: Optional[SchedulerState] = None, once: bool = False) -> SchedulerState:
        """
        Tick every interval_seconds until halted or cancelled.

        Raises SchedulerHaltedError when consecutive failures reach
        max_consecutive_failures. Returns the final state when once=True.
        """
        sched = self.settings.scheduler
        logger.info("Starting rewards scheduler")
        logger.info(f"  Interval: {sched.interval_seconds}s")
        logger.info(f"  Dry run: {sched.dry_run}")
        logger.info(f"  State file: {self.state_path}")
        logger.info(f"  Max consecutive failures: {sched.max_consecutive_failures}")

        if state is None:
            state = SchedulerState.load_or_default(self.state_path)

        while True:
            self._check_ceiling(state)
            result = await self.run_once(state)
            state = result.state
            self._check_ceiling(state)
            if once:
                return state
            await trio.sleep(sched.interval_seconds)
