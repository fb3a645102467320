"""
Geometry index for administrative boundaries.

Stores region polygons tagged with a blocking key and validity period,
and answers containment and distance queries in planar coordinates.
Top-level units are buffered because boundaries are soft constraints:
the buffer absorbs coordinate and survey error near the edges.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from ..cache.models import Region
from .errors import InvalidGeometryError

logger = logging.getLogger(__name__)


def check_geometry(region: Region) -> BaseGeometry:
    """Return the region geometry, raising InvalidGeometryError if it is unusable."""
    geometry = region.geometry
    if geometry is None or not isinstance(geometry, BaseGeometry):
        raise InvalidGeometryError(region.region_id, "missing geometry")
    if geometry.is_empty:
        raise InvalidGeometryError(region.region_id, "empty geometry")
    if geometry.geom_type not in ("Polygon", "MultiPolygon"):
        raise InvalidGeometryError(region.region_id, f"not a polygon ({geometry.geom_type})")
    if not geometry.is_valid:
        raise InvalidGeometryError(region.region_id, "self-intersecting or degenerate polygon")
    return geometry


def contains(region: Region, point: Point, tolerance: float = 0.0) -> bool:
    """Check whether ``point`` lies inside ``region`` buffered by ``tolerance``."""
    return distance(point, region) <= tolerance


def distance(point: Point, region: Region, validate: bool = True) -> float:
    """Planar distance from ``point`` to ``region``.

    Returns 0 when the point lies inside the (unbuffered) region, otherwise
    the distance to the nearest boundary. Pass ``validate=False`` for regions
    already checked with check_geometry().
    """
    geometry = check_geometry(region) if validate else region.geometry
    return float(geometry.distance(point))


class GeometryIndex:
    """Blocking-key lookup over administrative regions."""

    def __init__(
        self,
        regions: Iterable[Region],
        buffer_distance: float = 500.0,
        top_level_key_of: Optional[Callable[[Region], Optional[str]]] = None,
    ):
        """Initialize geometry index.

        Args:
            regions: All regions (top-level units and lower-level polygons)
            buffer_distance: Tolerance added to top-level boundaries, in CRS units
            top_level_key_of: Returns the blocking key of a top-level unit,
                or None for lower-level regions (default: every region is a unit)
        """
        if buffer_distance < 0:
            raise ValueError(f"buffer_distance must be >= 0, got {buffer_distance}")

        self.buffer_distance = buffer_distance
        self.top_level_key_of = top_level_key_of or (lambda region: region.blocking_key)

        self._by_key: Dict[str, List[Region]] = {}
        self._boundaries: Dict[str, BaseGeometry] = {}
        self._buffered: Dict[str, BaseGeometry] = {}
        self.invalid_units: List[str] = []

        self._build(list(regions))

    @classmethod
    def build_index(
        cls,
        regions: Iterable[Region],
        buffer_distance: float = 500.0,
        top_level_key_of: Optional[Callable[[Region], Optional[str]]] = None,
    ) -> "GeometryIndex":
        """Build an index over ``regions``."""
        return cls(regions, buffer_distance, top_level_key_of)

    def _build(self, regions: List[Region]) -> None:
        unit_geometries: Dict[str, List[BaseGeometry]] = {}

        for region in regions:
            self._by_key.setdefault(region.blocking_key, []).append(region)

            key = self.top_level_key_of(region)
            if key is None:
                continue
            try:
                unit_geometries.setdefault(key, []).append(check_geometry(region))
            except InvalidGeometryError as e:
                logger.warning(f"Skipping top-level unit: {e}")
                self.invalid_units.append(region.region_id)

        for key in self._by_key:
            self._by_key[key].sort(key=lambda r: r.region_id)

        # A key may have several vintages of its boundary; block on their union
        for key, geometries in unit_geometries.items():
            boundary = geometries[0] if len(geometries) == 1 else unary_union(geometries)
            self._boundaries[key] = boundary
            self._buffered[key] = boundary.buffer(self.buffer_distance)

        logger.info(
            f"Geometry index built: {len(regions)} regions, "
            f"{len(self._boundaries)} top-level units, buffer {self.buffer_distance}"
        )

    def query_by_key(self, key: str) -> List[Region]:
        """Return the regions tagged with ``key``, ordered by region id."""
        return list(self._by_key.get(key, []))

    def top_level_keys(self) -> List[str]:
        return sorted(self._boundaries)

    def top_level_boundary(self, key: str) -> Optional[BaseGeometry]:
        return self._boundaries.get(key)

    def buffered_boundary(self, key: str) -> Optional[BaseGeometry]:
        return self._buffered.get(key)

    def within_unit(self, key: str, point: Point, tolerance: Optional[float] = None) -> bool:
        """Check whether ``point`` lies within ``tolerance`` of top-level unit ``key``."""
        boundary = self._boundaries.get(key)
        if boundary is None:
            return False
        if tolerance is None:
            tolerance = self.buffer_distance
        return boundary.distance(point) <= tolerance

    # Module-level helpers exposed on the index for callers holding only the index
    contains = staticmethod(contains)
    distance = staticmethod(distance)
