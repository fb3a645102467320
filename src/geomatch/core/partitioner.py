"""
Block partitioning.

Splits the full candidate set and the full lower-level region set into
groups keyed by a coarse administrative identifier, using buffered
containment against the top-level units of a GeometryIndex. Built once,
before any matching, so each target only scans its own block.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import geopandas as gpd

from ..cache.models import Candidate, Region
from .errors import InvalidGeometryError
from .geometry_index import GeometryIndex, check_geometry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Block:
    """Candidates and regions belonging to one blocking key."""
    key: str
    candidates: Tuple[Candidate, ...] = ()
    regions: Tuple[Region, ...] = ()
    boundary: Optional[Any] = None  # top-level unit geometry, unbuffered


@dataclass
class PartitionStatistics:
    """Aggregate statistics for a partition run."""
    total_candidates: int = 0
    total_regions: int = 0
    top_level_units: int = 0
    blocks: int = 0
    assigned_candidates: int = 0
    assigned_regions: int = 0
    dropped_candidates: int = 0
    dropped_regions: int = 0
    multi_block_candidates: int = 0
    multi_block_regions: int = 0
    invalid_regions: int = 0
    block_sizes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_candidates": self.total_candidates,
            "total_regions": self.total_regions,
            "top_level_units": self.top_level_units,
            "blocks": self.blocks,
            "assigned_candidates": self.assigned_candidates,
            "assigned_regions": self.assigned_regions,
            "dropped_candidates": self.dropped_candidates,
            "dropped_regions": self.dropped_regions,
            "multi_block_candidates": self.multi_block_candidates,
            "multi_block_regions": self.multi_block_regions,
            "invalid_regions": self.invalid_regions,
            "block_sizes": dict(self.block_sizes),
        }


class BlockPartitioner:
    """Assigns candidates and lower-level regions to blocks."""

    def __init__(self):
        self.stats = PartitionStatistics()
        self.index: Optional[GeometryIndex] = None

    def partition(
        self,
        candidates: Iterable[Candidate],
        regions: Iterable[Region],
        top_level_key_of: Callable[[Region], Optional[str]],
        buffer_distance: float = 500.0,
    ) -> Dict[str, Block]:
        """Partition candidates and regions by buffered top-level unit.

        A candidate or region may land in more than one block when buffered
        units overlap. Anything inside no buffered unit is dropped and only
        counted in the statistics.

        Args:
            candidates: All candidate points
            regions: All regions; top-level units are those for which
                ``top_level_key_of`` returns a key
            top_level_key_of: Maps a region to its blocking key if it is a
                top-level unit, otherwise None
            buffer_distance: Tolerance added to each unit boundary

        Returns:
            Dictionary of blocking key to Block
        """
        candidates = list(candidates)
        regions = list(regions)

        self.index = GeometryIndex.build_index(regions, buffer_distance, top_level_key_of)
        keys = self.index.top_level_keys()

        lower_regions, invalid = self._valid_lower_regions(regions, top_level_key_of)

        self.stats = PartitionStatistics(
            total_candidates=len(candidates),
            total_regions=len(lower_regions) + invalid,
            top_level_units=len(keys),
            invalid_regions=invalid,
        )

        candidate_members = self._assign(
            gpd.GeoSeries([c.point for c in candidates]), keys
        )
        region_members = self._assign(
            gpd.GeoSeries([r.geometry for r in lower_regions]), keys
        )

        blocks: Dict[str, Block] = {}
        for key in keys:
            block_candidates = tuple(
                sorted((candidates[i] for i in candidate_members.get(key, [])),
                       key=lambda c: c.candidate_id)
            )
            block_regions = tuple(
                sorted((lower_regions[i] for i in region_members.get(key, [])),
                       key=lambda r: r.region_id)
            )
            blocks[key] = Block(
                key=key,
                candidates=block_candidates,
                regions=block_regions,
                boundary=self.index.top_level_boundary(key),
            )
            self.stats.block_sizes[key] = len(block_candidates)

        self._count_assignments(candidate_members, len(candidates), "candidates")
        self._count_assignments(region_members, len(lower_regions), "regions")
        self.stats.blocks = len(blocks)

        if self.stats.dropped_candidates or self.stats.dropped_regions:
            logger.warning(
                f"{self.stats.dropped_candidates} candidates and "
                f"{self.stats.dropped_regions} regions fall outside every buffered unit "
                f"and are unreachable"
            )
        logger.info(
            f"Partitioned {len(candidates)} candidates and {len(lower_regions)} regions "
            f"into {len(blocks)} blocks"
        )

        return blocks

    def _valid_lower_regions(
        self,
        regions: List[Region],
        top_level_key_of: Callable[[Region], Optional[str]],
    ) -> Tuple[List[Region], int]:
        valid = []
        invalid = 0
        for region in regions:
            if top_level_key_of(region) is not None:
                continue
            try:
                check_geometry(region)
            except InvalidGeometryError as e:
                logger.warning(f"Excluding region from blocks: {e}")
                invalid += 1
                continue
            valid.append(region)
        return valid, invalid

    def _assign(self, geometries: gpd.GeoSeries, keys: List[str]) -> Dict[str, List[int]]:
        """Return positional indices of ``geometries`` covered by each buffered unit."""
        members: Dict[str, List[int]] = {}
        if geometries.empty:
            return members

        tree = geometries.sindex
        for key in keys:
            buffered = self.index.buffered_boundary(key)
            hits = tree.query(buffered, predicate="covers")
            if len(hits):
                members[key] = sorted(int(i) for i in hits)
        return members

    def _count_assignments(
        self,
        members: Dict[str, List[int]],
        total: int,
        kind: str,
    ) -> None:
        counts: Dict[int, int] = {}
        for indices in members.values():
            for i in indices:
                counts[i] = counts.get(i, 0) + 1

        assigned = len(counts)
        multi = sum(1 for n in counts.values() if n > 1)

        setattr(self.stats, f"assigned_{kind}", assigned)
        setattr(self.stats, f"dropped_{kind}", total - assigned)
        setattr(self.stats, f"multi_block_{kind}", multi)
