"""
Pipeline orchestrator for running the matching engine over many targets.

The MatchPipeline builds (or loads) the blocks once, then dispatches targets
to a worker pool, collecting results as they complete. Every completed result
is checkpointed to the ResultStore, so an interrupted run resumes where it
stopped.
"""

import csv
import logging
import threading
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    BrokenExecutor,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tqdm import tqdm

from .cache.block_store import BlockStore
from .cache.models import Candidate, MatchResult, MatchStatus, Region, Target
from .cache.result_store import ResultStore
from .config_manager import MatchConfig
from .core.match_engine import MatchEngine, MatchStatistics
from .core.partitioner import Block, BlockPartitioner
from .export.statistics_aggregator import StatisticsAggregator

logger = logging.getLogger(__name__)

# Engine held by each worker process, set once by the pool initializer
_WORKER_ENGINE: Optional[MatchEngine] = None


def _init_worker(blocks: Dict[str, Block], config: MatchConfig) -> None:
    global _WORKER_ENGINE
    _WORKER_ENGINE = MatchEngine(blocks, config)


def _match_in_worker(target: Target) -> Tuple[MatchResult, int]:
    return _WORKER_ENGINE.timed_match(target)


@dataclass
class PipelineResult:
    """Result of a matching run."""
    run_id: str
    total_targets: int
    skipped: int
    processed: int
    not_dispatched: int
    total_time_ms: int
    failed_dispatch: int = 0
    statistics: MatchStatistics = field(default_factory=MatchStatistics)
    results: List[MatchResult] = field(default_factory=list)
    interrupted: bool = False
    start_time: str = ""
    end_time: str = ""

    def status_counts(self) -> Dict[str, int]:
        return {status.value: getattr(self.statistics, status.value) for status in MatchStatus}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "total_targets": self.total_targets,
            "skipped": self.skipped,
            "processed": self.processed,
            "not_dispatched": self.not_dispatched,
            "failed_dispatch": self.failed_dispatch,
            "interrupted": self.interrupted,
            "total_time_ms": self.total_time_ms,
            "avg_time_ms": self.total_time_ms / self.processed if self.processed > 0 else 0,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "statuses": self.status_counts(),
            "statistics": self.statistics.to_dict(),
        }


class MatchPipeline:
    """Orchestrates blocking, parallel matching and checkpointing."""

    RESULT_FIELDS = [
        "target_id", "candidate_id", "string_dist", "spatial_dist",
        "status", "reason", "alignment", "review_candidate_ids", "period",
    ]

    def __init__(
        self,
        config: MatchConfig,
        result_store: Optional[ResultStore] = None,
        block_store: Optional[BlockStore] = None,
        crs: Optional[str] = None,
    ):
        """Initialize pipeline.

        Args:
            config: Validated matching configuration
            result_store: Checkpoint store (created from config.results_db if omitted)
            block_store: Block artifact store (created from config.block_dir if omitted)
            crs: Projected CRS recorded in block artifacts
        """
        self.config = config
        self.result_store = result_store or ResultStore(config.results_db)
        self.block_store = block_store or BlockStore(config.block_dir, crs=crs)

        self.blocks: Dict[str, Block] = {}
        self.partition_stats: Optional[Dict[str, Any]] = None
        self._blocks_ready = False
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    def top_level_key_of(self, region: Region) -> Optional[str]:
        """Blocking key of a top-level unit, None for lower-level regions."""
        if region.level == self.config.top_level:
            return region.blocking_key
        return None

    def build_blocks(
        self,
        candidates: Iterable[Candidate],
        regions: Iterable[Region],
        save: bool = True,
    ) -> Dict[str, Block]:
        """Partition candidates and regions into blocks (and persist them).

        Args:
            candidates: All candidates
            regions: Top-level units and lower-level regions
            save: Write block artifacts to the block store

        Returns:
            Dictionary of blocking key to Block
        """
        partitioner = BlockPartitioner()
        self.blocks = partitioner.partition(
            candidates,
            regions,
            self.top_level_key_of,
            self.config.buffer_distance_m,
        )
        self.partition_stats = partitioner.stats.to_dict()
        self._blocks_ready = True

        if save:
            self.block_store.save(self.blocks, self.partition_stats, settings=self.block_settings())

        return self.blocks

    def block_settings(self) -> Dict[str, Any]:
        """Settings that shape the blocks, recorded alongside saved artifacts."""
        return {
            "buffer_distance_m": self.config.buffer_distance_m,
            "top_level": self.config.top_level,
            "crs": self.block_store.crs,
        }

    def saved_blocks_current(self) -> bool:
        """Whether saved blocks exist and were built with the current settings."""
        if not self.block_store.exists():
            return False
        saved = self.block_store.manifest().get("settings") or {}
        current = self.block_settings()
        if current["crs"] is None:
            saved = {k: v for k, v in saved.items() if k != "crs"}
            current.pop("crs")
        return saved == current

    def load_blocks(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Block]:
        """Load previously saved blocks (only ``keys`` when given).

        Keys without a saved block are skipped; targets in them resolve to
        ``missing_block`` when matched.
        """
        self.blocks = self.block_store.load_all(keys)
        self.partition_stats = self.block_store.manifest().get("statistics") or None
        self._blocks_ready = True
        return self.blocks

    def load_blocks_for(self, targets: Iterable[Target]) -> Dict[str, Block]:
        """Load only the blocks the given targets can reach."""
        keys = set()
        for target in targets:
            for entry in target.periods.values():
                keys.add(entry.blocking_key)
        return self.load_blocks(keys)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop dispatching new targets; in-flight targets still finish."""
        if not self._stop_event.is_set():
            logger.warning("Stop requested: finishing in-flight targets")
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _make_executor(self, workers: int) -> Executor:
        if self.config.use_processes:
            return ProcessPoolExecutor(
                max_workers=workers,
                initializer=_init_worker,
                initargs=(self.blocks, self.config),
            )
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="geomatch")

    def run(
        self,
        targets: List[Target],
        run_id: Optional[str] = None,
        resume: bool = True,
        show_progress: bool = True,
    ) -> PipelineResult:
        """Match all targets with a worker pool.

        Args:
            targets: Targets to match
            run_id: Optional run ID (generated if not provided)
            resume: Skip targets that already have a stored result
            show_progress: Show a progress bar

        Returns:
            PipelineResult with overall statistics

        Raises:
            RuntimeError: If no blocks were built or loaded
        """
        if not self._blocks_ready:
            raise RuntimeError("Blocks must be built or loaded before matching")

        # a stop only applies to the run it was requested in
        self._stop_event.clear()

        if run_id is None:
            run_id = f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        start_time = time.time()
        start_time_str = datetime.now().isoformat()

        pending = self._pending_targets(targets, resume)
        total = len(targets)
        skipped = total - len(pending)
        workers = max(1, int(self.config.worker_count))

        print(f"\n{'='*80}")
        print(f"Starting Run: {self.config.name}")
        print(f"Run ID: {run_id}")
        print(f"Targets: {len(targets)} ({skipped} already processed)")
        print(f"Blocks: {len(self.blocks)}")
        print(f"Workers: {workers} ({'processes' if self.config.use_processes else 'threads'})")
        print(f"{'='*80}\n")

        # Record run in database (optional)
        try:
            self.result_store.record_run_start(run_id, self.config.to_dict(), len(pending))
        except Exception as e:
            logger.warning(f"Could not record run start: {e}")

        stats = MatchStatistics()
        collected: Dict[str, MatchResult] = {}
        dispatched = 0
        failed = 0
        interrupted = False
        broken = False

        engine = MatchEngine(self.blocks, self.config)
        window = 2 * workers
        iterator = iter(pending)
        in_flight: Dict[Future, str] = {}

        with self._make_executor(workers) as executor, tqdm(
            total=len(pending), desc="Matching", unit="target", disable=not show_progress
        ) as progress:

            def fill() -> int:
                nonlocal broken
                submitted = 0
                while len(in_flight) < window and not self._stop_event.is_set() and not broken:
                    target = next(iterator, None)
                    if target is None:
                        break
                    try:
                        if self.config.use_processes:
                            future = executor.submit(_match_in_worker, target)
                        else:
                            future = executor.submit(engine.timed_match, target)
                    except BrokenExecutor as e:
                        logger.error(f"Worker pool is broken, no further targets dispatched: {e}")
                        broken = True
                        break
                    in_flight[future] = target.target_id
                    submitted += 1
                return submitted

            dispatched += fill()
            while in_flight:
                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    interrupted = True
                    self.request_stop()
                    continue

                for future in done:
                    target_id = in_flight.pop(future)
                    outcome = self._result_of(future, target_id)
                    progress.update(1)
                    if outcome is None:
                        # not checkpointed, so the next run retries it
                        failed += 1
                        if isinstance(future.exception(), BrokenExecutor):
                            broken = True
                        continue
                    result, processing_time_ms = outcome
                    self._collect(result, processing_time_ms, run_id, stats, collected)

                dispatched += fill()

        not_dispatched = len(pending) - dispatched
        if self._stop_event.is_set() or broken:
            interrupted = True

        total_time_ms = int((time.time() - start_time) * 1000)

        result = PipelineResult(
            run_id=run_id,
            total_targets=total,
            skipped=skipped,
            processed=len(collected),
            not_dispatched=not_dispatched,
            total_time_ms=total_time_ms,
            failed_dispatch=failed,
            statistics=stats,
            results=[collected[k] for k in sorted(collected)],
            interrupted=interrupted,
            start_time=start_time_str,
            end_time=datetime.now().isoformat(),
        )

        self._print_summary(result)

        try:
            self.result_store.record_run_end(
                run_id,
                status="interrupted" if interrupted else "completed",
                results=result.to_dict(),
            )
        except Exception as e:
            logger.warning(f"Could not update run status: {e}")

        return result

    def _pending_targets(self, targets: List[Target], resume: bool) -> List[Target]:
        processed = self.result_store.processed_ids() if resume else set()
        pending = []
        seen = set()
        duplicates = 0
        for target in targets:
            if target.target_id in seen:
                duplicates += 1
                continue
            seen.add(target.target_id)
            if target.target_id not in processed:
                pending.append(target)

        if duplicates:
            logger.warning(f"Ignoring {duplicates} duplicate target ids")
        if resume and processed:
            logger.info(f"Resuming: {len(seen) - len(pending)} targets already have results")
        return pending

    @staticmethod
    def _result_of(future: Future, target_id: str) -> Optional[Tuple[MatchResult, int]]:
        """Return (result, ms) of a finished future, or None if the worker failed."""
        try:
            return future.result()
        except Exception as e:
            # timed_match handles target errors; this covers worker failures
            logger.error(f"Worker failed for target {target_id}: {e}")
            return None

    def _collect(
        self,
        result: MatchResult,
        processing_time_ms: int,
        run_id: str,
        stats: MatchStatistics,
        collected: Dict[str, MatchResult],
    ) -> None:
        collected[result.target_id] = result
        stats.add_result(result, processing_time_ms)
        self.result_store.save(result, run_id=run_id, processing_time_ms=processing_time_ms)

    def _print_summary(self, result: PipelineResult) -> None:
        """Print run summary.

        Args:
            result: PipelineResult
        """
        processed = result.processed
        print(f"\n{'='*80}")
        print(f"Run {'Interrupted' if result.interrupted else 'Complete'}: {self.config.name}")
        print(f"{'='*80}")
        print(f"Total Targets: {result.total_targets}")
        print(f"Skipped (already processed): {result.skipped}")
        print(f"Not dispatched: {result.not_dispatched}")
        if result.failed_dispatch:
            print(f"Worker failures (retried on resume): {result.failed_dispatch}")
        for status, count in result.status_counts().items():
            share = count / processed * 100 if processed else 0.0
            print(f"{status.capitalize()}: {count} ({share:.1f}%)")
        avg = result.total_time_ms / processed if processed else 0.0
        print(f"Total Time: {result.total_time_ms}ms ({avg:.1f}ms avg)")
        print(f"{'='*80}\n")

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def export_results(
        self,
        output_path: Path,
        status_filter: Optional[List[MatchStatus]] = None,
    ) -> int:
        """Export stored results to CSV.

        Args:
            output_path: Path to output CSV file
            status_filter: Optional list of statuses to include

        Returns:
            Number of records exported
        """
        results = self.result_store.query(statuses=status_filter)

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self.RESULT_FIELDS)
            writer.writeheader()
            for result in results:
                writer.writerow(result.to_dict())

        print(f"Exported {len(results)} results to {output_path}")
        return len(results)

    def generate_review_queue(self, output_path: Path) -> int:
        """Write ambiguous and rejected targets for human review.

        Rejected targets come first, ordered by spatial distance, followed by
        ambiguous targets.

        Returns:
            Number of records in review queue
        """
        results = self.result_store.query(statuses=[MatchStatus.REJECTED, MatchStatus.AMBIGUOUS])

        status_order = {MatchStatus.REJECTED.value: 0, MatchStatus.AMBIGUOUS.value: 1}
        results.sort(key=lambda r: (
            status_order.get(r.status, 2),
            r.spatial_dist if r.spatial_dist is not None else float("inf"),
            r.target_id,
        ))

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=[
                "target_id", "status", "reason", "review_candidate_ids",
                "string_dist", "spatial_dist", "period",
            ])
            writer.writeheader()
            for result in results:
                row = result.to_dict()
                writer.writerow({k: row[k] for k in writer.fieldnames})

        print(f"Generated review queue with {len(results)} targets at {output_path}")
        return len(results)

    def write_summary(
        self,
        run: Optional[PipelineResult] = None,
        targets: Optional[List[Target]] = None,
        output_name: str = "match_summary.json",
    ) -> Path:
        """Write the JSON summary of every stored result.

        Args:
            run: Result of the latest run, recorded under ``run``
            targets: Targets, used to break counts down by blocking key
            output_name: Output filename inside config.output_dir
        """
        block_of = None
        if targets:
            block_of = {}
            for target in targets:
                entry = target.for_period(self.config.period)
                if entry is not None:
                    block_of[target.target_id] = entry.blocking_key

        aggregator = StatisticsAggregator(self.config.output_dir)
        return aggregator.generate_summary(
            self.result_store.query(),
            partition_stats=self.partition_stats,
            run_info=run.to_dict() if run else None,
            output_name=output_name,
            block_of=block_of,
        )
