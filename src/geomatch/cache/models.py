"""
Pydantic models for matching records.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from shapely.geometry import Point


class MatchStatus(str, Enum):
    """Terminal state of a target after matching."""
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    REJECTED = "rejected"
    UNRESOLVED = "unresolved"


class Alignment(int, Enum):
    """Type/subtype agreement between a target and a candidate (higher is better)."""
    NONE = 0
    PARTIAL = 1
    EXACT = 2


class TargetPeriod(BaseModel):
    """Naming, typing and administrative context of a target in one period."""

    truncated_name: str
    type: Optional[str] = None
    subtype: Optional[str] = None
    blocking_key: str
    lower_admin_ref: Optional[str] = None

    class Config:
        """Pydantic config."""
        frozen = True


class Target(BaseModel):
    """A named point-location record to be matched."""

    target_id: str
    periods: Dict[int, TargetPeriod]

    class Config:
        """Pydantic config."""
        frozen = True

    def for_period(self, period: Optional[int] = None) -> Optional[TargetPeriod]:
        """Return the entry for ``period``, or the most recent one when ``period`` is None."""
        if not self.periods:
            return None
        if period is None:
            return self.periods[max(self.periods)]
        return self.periods.get(period)


class Candidate(BaseModel):
    """A geocoded point that may match a target.

    Coordinates are planar (projected CRS, metres).
    """

    candidate_id: str
    x: float
    y: float
    name: str
    type: Optional[str] = None
    subtype: Optional[str] = None
    source: Optional[str] = None
    accurate: Optional[bool] = None

    class Config:
        """Pydantic config."""
        frozen = True

    @property
    def point(self) -> Point:
        return Point(self.x, self.y)


class Region(BaseModel):
    """Administrative boundary polygon."""

    region_id: str
    geometry: Any
    level: str
    blocking_key: str
    name: Optional[str] = None
    valid_from: Optional[int] = None
    valid_to: Optional[int] = None

    class Config:
        """Pydantic config."""
        frozen = True
        arbitrary_types_allowed = True

    def is_valid_at(self, period: Optional[int]) -> bool:
        """Check whether the region exists in ``period`` (bounds inclusive, None = open)."""
        if period is None:
            return True
        if self.valid_from is not None and period < self.valid_from:
            return False
        if self.valid_to is not None and period > self.valid_to:
            return False
        return True


class MatchResult(BaseModel):
    """Outcome of matching one target. Produced once, never mutated."""

    target_id: str
    candidate_id: Optional[str] = None
    string_dist: Optional[float] = Field(None, ge=0, le=1)
    spatial_dist: Optional[float] = Field(None, ge=0)
    status: MatchStatus

    # Audit trail
    reason: Optional[str] = None
    alignment: Optional[Alignment] = None
    review_candidate_ids: List[str] = Field(default_factory=list)
    period: Optional[int] = None

    class Config:
        """Pydantic config."""
        frozen = True
        use_enum_values = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for CSV/JSON export."""
        return {
            "target_id": self.target_id,
            "candidate_id": self.candidate_id,
            "string_dist": self.string_dist,
            "spatial_dist": self.spatial_dist,
            "status": self.status,
            "reason": self.reason,
            "alignment": self.alignment,
            "review_candidate_ids": ",".join(self.review_candidate_ids),
            "period": self.period,
        }

    @classmethod
    def from_db_row(cls, row: Any) -> "MatchResult":
        """Create MatchResult from database row.

        Args:
            row: sqlite3.Row object

        Returns:
            MatchResult instance
        """
        import json

        return cls(
            target_id=row["target_id"],
            candidate_id=row["candidate_id"],
            string_dist=row["string_dist"],
            spatial_dist=row["spatial_dist"],
            status=MatchStatus(row["status"]),
            reason=row["reason"],
            alignment=Alignment(row["alignment"]) if row["alignment"] is not None else None,
            review_candidate_ids=json.loads(row["review_candidate_ids"]) if row["review_candidate_ids"] else [],
            period=row["period"],
        )
