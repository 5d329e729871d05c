"""
Hexagonal grid index built on H3.

Maps coordinates to cell ids at a configurable resolution and answers the
neighbor / radius queries used for venue-event lookup and spatial smoothing.
"""

import math
import logging
from dataclasses import dataclass

import h3

from surgecast.common.config import H3_RESOLUTION, H3_MIN_RESOLUTION, H3_MAX_RESOLUTION
from surgecast.common.errors import ConfigurationError, ValidationError
from surgecast.geo.utils import haversine_m, is_valid_coordinate

logger = logging.getLogger(__name__)

# Hard ceiling on ring expansion for a single radius query
MAX_RINGS = 200


@dataclass(frozen=True)
class GridCell:
    """A hexagonal cell at a given resolution."""
    id: str
    resolution: int
    center: tuple[float, float]


class GridIndex:
    """
    Deterministic coordinate <-> cell mapping.

    Coarser resolutions (lower numbers) cover more area per cell and are used
    for low-density regions; see parent_of().
    """

    def __init__(
        self,
        default_resolution: int = H3_RESOLUTION,
        min_resolution: int = H3_MIN_RESOLUTION,
        max_resolution: int = H3_MAX_RESOLUTION,
    ):
        self.min_resolution = min_resolution
        self.max_resolution = max_resolution
        self.default_resolution = self._check_resolution(default_resolution)

    def _check_resolution(self, resolution: int | None) -> int:
        if resolution is None:
            return self.default_resolution
        if (
            isinstance(resolution, bool)
            or not isinstance(resolution, int)
            or not self.min_resolution <= resolution <= self.max_resolution
        ):
            raise ConfigurationError(
                f"Resolution {resolution!r} outside supported range "
                f"{self.min_resolution}..{self.max_resolution}"
            )
        return resolution

    @staticmethod
    def _check_cell(cell_id: str) -> str:
        if not isinstance(cell_id, str) or not h3.is_valid_cell(cell_id):
            raise ValidationError(f"Invalid cell id: {cell_id!r}")
        return cell_id

    def cell_of(self, lat: float, lng: float, resolution: int | None = None) -> str:
        """Cell id containing (lat, lng). Pure: same input, same cell."""
        resolution = self._check_resolution(resolution)
        if not is_valid_coordinate(lat, lng):
            raise ValidationError(f"Invalid coordinates: ({lat!r}, {lng!r})")
        return h3.latlng_to_cell(lat, lng, resolution)

    def center_of(self, cell_id: str) -> tuple[float, float]:
        """Center point of a cell (not necessarily the original input point)."""
        lat, lng = h3.cell_to_latlng(self._check_cell(cell_id))
        return float(lat), float(lng)

    def cell(self, lat: float, lng: float, resolution: int | None = None) -> GridCell:
        resolution = self._check_resolution(resolution)
        cell_id = self.cell_of(lat, lng, resolution)
        return GridCell(id=cell_id, resolution=resolution, center=self.center_of(cell_id))

    def resolution_of(self, cell_id: str) -> int:
        return h3.get_resolution(self._check_cell(cell_id))

    def neighbors(self, cell_id: str) -> list[str]:
        """Immediate ring-1 neighbors, excluding the cell itself."""
        self._check_cell(cell_id)
        return sorted(c for c in h3.grid_disk(cell_id, 1) if c != cell_id)

    def parent_of(self, cell_id: str, resolution: int) -> str:
        """Coarser cell covering cell_id at the given resolution."""
        self._check_cell(cell_id)
        resolution = self._check_resolution(resolution)
        if resolution > h3.get_resolution(cell_id):
            raise ConfigurationError(
                f"Parent resolution {resolution} is finer than cell resolution "
                f"{h3.get_resolution(cell_id)}"
            )
        return h3.cell_to_parent(cell_id, resolution)

    def cells_within_radius(
        self,
        center: tuple[float, float],
        radius_m: float,
        resolution: int | None = None,
    ) -> list[str]:
        """
        Cells whose center lies within radius_m of the query point.

        Expands ring by ring from the query's cell and filters every candidate
        by haversine distance; ring membership alone over- and under-counts
        near cell boundaries. The query's own cell is always included.

        Args:
            center: (lat, lng) query point
            radius_m: Radius in meters (>= 0)
            resolution: Grid resolution (defaults to the index default)

        Returns:
            Sorted list of cell ids
        """
        lat, lng = center
        if isinstance(radius_m, bool) or not isinstance(radius_m, (int, float)) \
                or math.isnan(radius_m) or radius_m < 0:
            raise ValidationError(f"Invalid radius: {radius_m!r}")

        resolution = self._check_resolution(resolution)
        origin = self.cell_of(lat, lng, resolution)

        # Conservative center-to-center spacing; real cells vary in size by
        # up to ~2x across the globe.
        spacing_m = 2.0 * h3.average_hexagon_edge_length(resolution, unit="m") * math.sqrt(3)

        result = {origin}
        seen = {origin}
        for k in range(1, MAX_RINGS + 1):
            ring = set(h3.grid_disk(origin, k)) - seen
            if not ring:
                break
            seen |= ring

            nearest = math.inf
            for cell_id in ring:
                c_lat, c_lng = h3.cell_to_latlng(cell_id)
                distance = haversine_m(lat, lng, c_lat, c_lng)
                nearest = min(nearest, distance)
                if distance <= radius_m:
                    result.add(cell_id)

            if nearest > radius_m + spacing_m:
                break
        else:
            logger.warning(
                f"Radius query hit ring limit ({MAX_RINGS}) for {radius_m}m at res {resolution}"
            )

        return sorted(result)
