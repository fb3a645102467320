"""
Exception taxonomy for the matching engine.

Target-level errors carry the status and reason code they resolve to; the
engine converts them into a MatchResult instead of letting them escape.
Only ConfigurationError is fatal.
"""

from typing import List, Optional

from ..cache.models import Alignment, MatchStatus


class ConfigurationError(ValueError):
    """Invalid configuration detected at startup."""


class InvalidGeometryError(ValueError):
    """Malformed or degenerate polygon."""

    def __init__(self, region_id: str, detail: str = "invalid geometry"):
        super().__init__(f"Region {region_id}: {detail}")
        self.region_id = region_id
        self.detail = detail


class MatchError(Exception):
    """Base class for non-fatal, target-level matching outcomes."""

    status = MatchStatus.UNRESOLVED
    reason = "error"

    def __init__(
        self,
        message: str,
        string_dist: Optional[float] = None,
        spatial_dist: Optional[float] = None,
        review_candidate_ids: Optional[List[str]] = None,
        alignment: Optional[Alignment] = None,
    ):
        super().__init__(message)
        self.string_dist = string_dist
        self.spatial_dist = spatial_dist
        self.review_candidate_ids = review_candidate_ids or []
        self.alignment = alignment


class MissingPeriodError(MatchError):
    reason = "missing_period"


class MissingBlockError(MatchError):
    reason = "missing_block"


class NoRegionError(MatchError):
    reason = "no_region"


class NoCandidateAfterThreshold(MatchError):
    reason = "no_candidate_after_threshold"


class AmbiguousTieError(MatchError):
    """Tie survived every tie-break; flagged for manual review."""

    status = MatchStatus.AMBIGUOUS
    reason = "ambiguous_tie"


class SpatialGateRejection(MatchError):
    """Best candidate lies too far from the resolved region."""

    status = MatchStatus.REJECTED
    reason = "spatial_gate"
