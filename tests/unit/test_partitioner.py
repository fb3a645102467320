"""
Unit tests for block partitioning.
"""

import pytest
from shapely.geometry import Polygon

from geomatch.cache.models import Region
from geomatch.core.partitioner import BlockPartitioner

from conftest import make_candidate


@pytest.fixture
def partitioner():
    return BlockPartitioner()


@pytest.fixture
def blocks(partitioner, candidates, regions, top_level_key_of):
    return partitioner.partition(candidates, regions, top_level_key_of, 500.0)


def candidate_ids(block):
    return [c.candidate_id for c in block.candidates]


def region_ids(block):
    return [r.region_id for r in block.regions]


class TestBlockAssignment:

    def test_one_block_per_unit(self, blocks):
        assert sorted(blocks) == ["C1", "C2"]

    def test_candidates_assigned(self, blocks):
        assert candidate_ids(blocks["C1"]) == ["P1", "P2", "P_EDGE"]
        assert candidate_ids(blocks["C2"]) == ["P3", "P_EDGE"]

    def test_regions_assigned(self, blocks):
        assert region_ids(blocks["C1"]) == ["S1", "S2"]
        assert region_ids(blocks["C2"]) == ["S3"]

    def test_top_level_units_not_in_blocks(self, blocks):
        for block in blocks.values():
            assert all(r.level != "constituency" for r in block.regions)

    def test_boundary_is_unbuffered_unit(self, blocks, units):
        assert blocks["C1"].boundary.equals(units[0].geometry)

    def test_blocking_invariant(self, blocks, partitioner):
        """Every block member lies within the buffered unit of its key."""
        for key, block in blocks.items():
            boundary = partitioner.index.top_level_boundary(key)
            for candidate in block.candidates:
                assert boundary.distance(candidate.point) <= 500.0 + 1e-6
            buffered = partitioner.index.buffered_boundary(key)
            for region in block.regions:
                assert buffered.covers(region.geometry)


class TestPartitionStatistics:

    def test_counts(self, blocks, partitioner):
        stats = partitioner.stats
        assert stats.total_candidates == 5
        assert stats.top_level_units == 2
        assert stats.blocks == 2
        assert stats.assigned_candidates == 4
        assert stats.dropped_candidates == 1
        assert stats.multi_block_candidates == 1
        assert stats.assigned_regions == 3
        assert stats.dropped_regions == 0

    def test_block_sizes(self, blocks, partitioner):
        assert partitioner.stats.block_sizes == {"C1": 3, "C2": 2}

    def test_to_dict(self, blocks, partitioner):
        data = partitioner.stats.to_dict()
        assert data["dropped_candidates"] == 1
        assert data["block_sizes"]["C2"] == 2


class TestBufferEdges:

    def test_just_inside_buffer(self, partitioner, regions, top_level_key_of):
        inside = make_candidate("IN", -499, 5000, "EDGE")
        outside = make_candidate("OUT", -501, 5000, "EDGE")
        blocks = partitioner.partition([inside, outside], regions, top_level_key_of, 500.0)
        assert candidate_ids(blocks["C1"]) == ["IN"]
        assert partitioner.stats.dropped_candidates == 1

    def test_zero_buffer_keeps_boundary_points(self, partitioner, regions, top_level_key_of):
        on_edge = make_candidate("EDGE", 0, 5000, "EDGE")
        blocks = partitioner.partition([on_edge], regions, top_level_key_of, 0.0)
        assert candidate_ids(blocks["C1"]) == ["EDGE"]

    def test_region_straddling_units_dropped(self, partitioner, units, top_level_key_of):
        straddle = Region(region_id="S9", geometry=Polygon([(8000, 0), (12000, 0), (12000, 1000), (8000, 1000)]),
                          level="sublocation", blocking_key="C1")
        blocks = partitioner.partition([], units + [straddle], top_level_key_of, 500.0)
        assert all(not b.regions for b in blocks.values())
        assert partitioner.stats.dropped_regions == 1


class TestInvalidInput:

    def test_invalid_region_excluded_and_counted(self, partitioner, units, top_level_key_of):
        bowtie = Region(region_id="BAD", geometry=Polygon([(0, 0), (10, 10), (10, 0), (0, 10)]),
                        level="sublocation", blocking_key="C1")
        blocks = partitioner.partition([], units + [bowtie], top_level_key_of, 500.0)
        assert blocks["C1"].regions == ()
        assert partitioner.stats.invalid_regions == 1

    def test_no_candidates(self, partitioner, regions, top_level_key_of):
        blocks = partitioner.partition([], regions, top_level_key_of, 500.0)
        assert all(b.candidates == () for b in blocks.values())
        assert partitioner.stats.dropped_candidates == 0

    def test_deterministic(self, candidates, regions, top_level_key_of):
        first = BlockPartitioner().partition(candidates, regions, top_level_key_of, 500.0)
        second = BlockPartitioner().partition(list(reversed(candidates)), regions, top_level_key_of, 500.0)
        assert {k: candidate_ids(b) for k, b in first.items()} == \
            {k: candidate_ids(b) for k, b in second.items()}
