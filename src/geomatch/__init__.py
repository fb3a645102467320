"""
geomatch - link named point records to geocoded candidates.

Geographic blocking, Jaro-Winkler name distance, spatial plausibility
gating and deterministic tie-breaking, run over a worker pool with a
resumable result store.
"""

from .cache.models import Alignment, Candidate, MatchResult, MatchStatus, Region, Target, TargetPeriod
from .config_manager import ConfigManager, MatchConfig
from .core.geometry_index import GeometryIndex
from .core.match_engine import MatchEngine, MatchStatistics
from .core.partitioner import Block, BlockPartitioner, PartitionStatistics
from .pipeline import MatchPipeline, PipelineResult

__version__ = "0.1.0"

__all__ = [
    "Alignment",
    "Block",
    "BlockPartitioner",
    "Candidate",
    "ConfigManager",
    "GeometryIndex",
    "MatchConfig",
    "MatchEngine",
    "MatchPipeline",
    "MatchResult",
    "MatchStatistics",
    "MatchStatus",
    "PartitionStatistics",
    "PipelineResult",
    "Region",
    "Target",
    "TargetPeriod",
]
