"""
Shared fixtures: a small planar world with two adjacent constituencies.

    C1: x 0..10000,  y 0..10000   sublocations S1 (KIBERA), S2 (LANGATA)
    C2: x 10000..20000, y 0..10000 sublocation S3 (KAREN)
"""

from typing import Optional

import pytest
from shapely.geometry import box

from geomatch.cache.models import Candidate, Region, Target, TargetPeriod
from geomatch.config_manager import MatchConfig


def make_target(
    target_id: str,
    name: str,
    blocking_key: str = "C1",
    lower_admin_ref: Optional[str] = None,
    type: Optional[str] = "SCH",
    subtype: Optional[str] = "PRI",
    period: int = 2015,
) -> Target:
    return Target(
        target_id=target_id,
        periods={
            period: TargetPeriod(
                truncated_name=name,
                type=type,
                subtype=subtype,
                blocking_key=blocking_key,
                lower_admin_ref=lower_admin_ref,
            )
        },
    )


def make_candidate(candidate_id, x, y, name, type="SCH", subtype="PRI", accurate=True) -> Candidate:
    return Candidate(
        candidate_id=candidate_id,
        x=x,
        y=y,
        name=name,
        type=type,
        subtype=subtype,
        source="survey",
        accurate=accurate,
    )


@pytest.fixture
def units():
    """Top-level units (constituencies)."""
    return [
        Region(region_id="C1", geometry=box(0, 0, 10000, 10000), level="constituency",
               blocking_key="C1", name="WESTLANDS"),
        Region(region_id="C2", geometry=box(10000, 0, 20000, 10000), level="constituency",
               blocking_key="C2", name="DAGORETTI"),
    ]


@pytest.fixture
def sublocations():
    """Lower-level regions."""
    return [
        Region(region_id="S1", geometry=box(0, 0, 5000, 5000), level="sublocation",
               blocking_key="C1", name="KIBERA"),
        Region(region_id="S2", geometry=box(5000, 0, 10000, 5000), level="sublocation",
               blocking_key="C1", name="LANGATA"),
        Region(region_id="S3", geometry=box(10000, 0, 15000, 5000), level="sublocation",
               blocking_key="C2", name="KAREN"),
    ]


@pytest.fixture
def regions(units, sublocations):
    return units + sublocations


@pytest.fixture
def candidates():
    return [
        make_candidate("P1", 1000, 1000, "ST MARYS"),
        make_candidate("P2", 7000, 1000, "ST MARKS", subtype="SEC"),
        make_candidate("P3", 15000, 8000, "HOLY CROSS", accurate=False),
        make_candidate("P_EDGE", 10200, 2000, "BORDER VIEW"),
        make_candidate("P_FAR", 50000, 50000, "NOWHERE"),
    ]


@pytest.fixture
def top_level_key_of():
    return lambda region: region.blocking_key if region.level == "constituency" else None


@pytest.fixture
def config(tmp_path):
    """Default matching settings with storage under tmp_path."""
    return MatchConfig(
        worker_count=2,
        block_dir=tmp_path / "blocks",
        results_db=tmp_path / "results.db",
        output_dir=tmp_path / "outputs",
    )
