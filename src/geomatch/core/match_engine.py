"""
Matching engine.

Links each target to at most one candidate from its block. Name distance
ranks candidates; categorical alignment and spatial distance break ties;
spatial distance also acts as a plausibility gate on the selected match.

Per target:
    1. block lookup            (missing -> unresolved)
    2. region resolution       (none -> unresolved)
    3. string + spatial scoring
    4. threshold filter        (no survivors -> unresolved)
    5. categorical alignment
    6. minimum string distance
    7. tie-break: alignment, then spatial distance (still tied -> ambiguous)
    8. spatial gate            (too far -> rejected)
    9. matched
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..cache.models import Alignment, Candidate, MatchResult, MatchStatus, Region, Target, TargetPeriod
from ..config_manager import MatchConfig
from . import geometry_index, string_scorer
from .alignment import AlignmentAssessor
from .errors import (
    AmbiguousTieError,
    InvalidGeometryError,
    MatchError,
    MissingBlockError,
    MissingPeriodError,
    NoCandidateAfterThreshold,
    NoRegionError,
    SpatialGateRejection,
)
from .partitioner import Block

logger = logging.getLogger(__name__)

# Scores closer than this are treated as tied
TIE_TOLERANCE = 1e-9


@dataclass
class ScoredCandidate:
    """A candidate with its scores for one target."""
    candidate: Candidate
    string_dist: float
    spatial_dist: float
    alignment: Alignment = Alignment.NONE


@dataclass
class MatchStatistics:
    """Counts per terminal status for a matching run."""
    total_targets: int = 0
    matched: int = 0
    ambiguous: int = 0
    rejected: int = 0
    unresolved: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)
    total_time_ms: int = 0

    def add_result(self, result: MatchResult, processing_time_ms: int = 0) -> None:
        """Add a result to statistics."""
        self.total_targets += 1
        self.total_time_ms += processing_time_ms

        status = MatchStatus(result.status)
        setattr(self, status.value, getattr(self, status.value) + 1)

        reason = result.reason or "unknown"
        self.reasons[reason] = self.reasons.get(reason, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_targets": self.total_targets,
            "matched": self.matched,
            "ambiguous": self.ambiguous,
            "rejected": self.rejected,
            "unresolved": self.unresolved,
            "reasons": dict(sorted(self.reasons.items())),
            "avg_time_ms": self.total_time_ms / self.total_targets if self.total_targets > 0 else 0,
            "total_time_ms": self.total_time_ms,
        }


class MatchEngine:
    """Matches targets against pre-partitioned blocks."""

    def __init__(
        self,
        blocks: Mapping[str, Block],
        config: Optional[MatchConfig] = None,
    ):
        """Initialize matching engine.

        Args:
            blocks: Blocking key to Block, read-only
            config: Matching configuration (defaults when omitted)
        """
        self.blocks = blocks
        self.config = config or MatchConfig()
        self.alignment_assessor = AlignmentAssessor()
        self.stats = MatchStatistics()

    def match(self, target: Target) -> MatchResult:
        """Match a single target, converting non-fatal outcomes into statuses.

        Never raises for target-level problems: every outcome is a MatchResult.
        """
        period = self._resolve_period(target)
        try:
            return self._match(target, period)
        except MatchError as e:
            logger.debug(f"Target {target.target_id}: {e}")
            return MatchResult(
                target_id=target.target_id,
                status=e.status,
                reason=e.reason,
                string_dist=e.string_dist,
                spatial_dist=e.spatial_dist,
                review_candidate_ids=e.review_candidate_ids,
                alignment=e.alignment,
                period=period,
            )

    def timed_match(self, target: Target) -> Tuple[MatchResult, int]:
        """Match a single target without touching shared statistics.

        Unexpected errors are logged and recorded as unresolved so one bad
        target does not stop the run. Safe to call from worker threads.

        Returns:
            Tuple of (result, processing_time_ms)
        """
        start_time = time.time()
        try:
            result = self.match(target)
        except Exception as e:
            logger.exception(f"Unexpected error matching target {target.target_id}: {e}")
            result = MatchResult(
                target_id=target.target_id,
                status=MatchStatus.UNRESOLVED,
                reason="error",
            )
        return result, int((time.time() - start_time) * 1000)

    def run_single(self, target: Target) -> MatchResult:
        """Match a single target and record statistics."""
        result, processing_time_ms = self.timed_match(target)
        self.stats.add_result(result, processing_time_ms)
        return result

    def run(self, targets: Sequence[Target]) -> List[MatchResult]:
        """Match targets sequentially."""
        return [self.run_single(target) for target in targets]

    def get_statistics(self) -> MatchStatistics:
        return self.stats

    def reset_statistics(self) -> None:
        self.stats = MatchStatistics()

    def _resolve_period(self, target: Target) -> Optional[int]:
        if self.config.period is not None:
            return self.config.period
        if not target.periods:
            return None
        return max(target.periods)

    def _match(self, target: Target, period: Optional[int]) -> MatchResult:
        entry = target.for_period(period)
        if entry is None:
            raise MissingPeriodError(f"No entry for period {period}")

        # 1. Block lookup
        block = self.blocks.get(entry.blocking_key)
        if block is None:
            raise MissingBlockError(f"No block for key {entry.blocking_key!r}")

        # 2. Region resolution
        regions = self._resolve_regions(entry, block, period)

        # 3. Scoring
        scored = self._score_candidates(entry, block.candidates, regions)

        # 4. Threshold filter
        survivors = self.filter_by_threshold(scored, self.config.string_threshold)
        if not survivors:
            best = min((s.string_dist for s in scored), default=None)
            raise NoCandidateAfterThreshold(
                f"No candidate within string threshold {self.config.string_threshold}",
                string_dist=best,
            )

        # 5. Categorical alignment
        for s in survivors:
            s.alignment = self.alignment_assessor.assess(
                entry.type, entry.subtype, s.candidate.type, s.candidate.subtype
            )

        # 6-7. Primary selection and tie-break
        selected = self._select(survivors)

        # 8. Spatial gate
        if selected.spatial_dist > self.config.max_spatial_distance_m:
            raise SpatialGateRejection(
                f"Candidate {selected.candidate.candidate_id} is "
                f"{selected.spatial_dist:.1f} from region, limit {self.config.max_spatial_distance_m}",
                string_dist=selected.string_dist,
                spatial_dist=selected.spatial_dist,
                review_candidate_ids=[selected.candidate.candidate_id],
                alignment=selected.alignment,
            )

        # 9. Matched
        return MatchResult(
            target_id=target.target_id,
            candidate_id=selected.candidate.candidate_id,
            string_dist=selected.string_dist,
            spatial_dist=selected.spatial_dist,
            status=MatchStatus.MATCHED,
            reason="matched",
            alignment=selected.alignment,
            period=period,
        )

    def _resolve_regions(
        self,
        entry: TargetPeriod,
        block: Block,
        period: Optional[int],
    ) -> List[Region]:
        """Find the region(s) candidates are measured against.

        Exact id match on the lower-level reference first, then the closest
        region name within ``region_name_threshold``. Targets without a
        reference fall back to the block's top-level boundary.
        """
        if not entry.lower_admin_ref:
            if block.boundary is None:
                raise NoRegionError(f"Block {block.key!r} has no boundary")
            return [Region(
                region_id=block.key,
                geometry=block.boundary,
                level=self.config.top_level,
                blocking_key=block.key,
            )]

        available = [r for r in block.regions if r.is_valid_at(period)]

        exact = [r for r in available if r.region_id == entry.lower_admin_ref]
        resolved = self._usable(exact)
        if resolved:
            return resolved

        named = [r for r in available if r.name]
        if named:
            distances = [
                string_scorer.score(entry.lower_admin_ref, r.name, self.config.prefix_weight)
                for r in named
            ]
            best = min(distances)
            if best <= self.config.region_name_threshold:
                closest = [
                    r for r, d in zip(named, distances)
                    if math.isclose(d, best, abs_tol=TIE_TOLERANCE)
                ]
                resolved = self._usable(closest)
                if resolved:
                    return resolved

        raise NoRegionError(f"No region matches {entry.lower_admin_ref!r} in block {block.key!r}")

    def _usable(self, regions: List[Region]) -> List[Region]:
        """Drop regions with malformed geometry, logging each one."""
        usable = []
        for region in regions:
            try:
                geometry_index.check_geometry(region)
            except InvalidGeometryError as e:
                logger.warning(f"Treating region as absent: {e}")
                continue
            usable.append(region)
        return usable

    def _score_candidates(
        self,
        entry: TargetPeriod,
        candidates: Sequence[Candidate],
        regions: List[Region],
    ) -> List[ScoredCandidate]:
        scored = []
        for candidate in candidates:
            string_dist = string_scorer.score(
                entry.truncated_name, candidate.name, self.config.prefix_weight
            )
            spatial_dist = min(
                geometry_index.distance(candidate.point, r, validate=False) for r in regions
            )
            scored.append(ScoredCandidate(candidate, string_dist, spatial_dist))
        return scored

    @staticmethod
    def filter_by_threshold(
        scored: Sequence[ScoredCandidate],
        string_threshold: float,
    ) -> List[ScoredCandidate]:
        """Keep candidates whose name distance does not exceed the threshold."""
        return [s for s in scored if s.string_dist <= string_threshold]

    def _select(self, survivors: List[ScoredCandidate]) -> ScoredCandidate:
        """Pick the single best candidate or raise AmbiguousTieError."""
        best_string = min(s.string_dist for s in survivors)
        tied = [s for s in survivors if math.isclose(s.string_dist, best_string, abs_tol=TIE_TOLERANCE)]

        if len(tied) > 1:
            best_alignment = max(s.alignment for s in tied)
            tied = [s for s in tied if s.alignment == best_alignment]

        if len(tied) > 1:
            best_spatial = min(s.spatial_dist for s in tied)
            tied = [s for s in tied if math.isclose(s.spatial_dist, best_spatial, abs_tol=TIE_TOLERANCE)]

        if len(tied) > 1:
            ids = sorted(s.candidate.candidate_id for s in tied)
            raise AmbiguousTieError(
                f"{len(tied)} candidates tied after tie-break: {', '.join(ids)}",
                string_dist=tied[0].string_dist,
                spatial_dist=tied[0].spatial_dist,
                review_candidate_ids=ids,
                alignment=tied[0].alignment,
            )

        return tied[0]
