"""
Exploratory grid cells for candidate generation.

Lays a regular grid of cell centres over a region's bounding box and
estimates each cell's population from the settlements around it.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from expansion.geo import METERS_PER_DEGREE_LAT, BoundingBox, haversine_many
from expansion.models import Settlement


@dataclass
class GridCell:
    """Centre of one exploratory cell."""
    row: int
    col: int
    lat: float
    lng: float
    estimated_population: float = 0.0
    region: Optional[str] = None

    @property
    def id(self) -> str:
        return f"grid_{self.row:04d}_{self.col:04d}"


class CandidateGrid:
    """
    Regular grid over a bounding box.

    Cell spacing is in meters; the longitude step is corrected for the box's
    centre latitude.
    """

    def __init__(self, bounds: BoundingBox, cell_size_m: float = 5000.0):
        self.bounds = bounds
        self.cell_size = cell_size_m

        self.lat_step = cell_size_m / METERS_PER_DEGREE_LAT
        cos_lat = max(math.cos(math.radians(bounds.center_latitude)), 0.01)
        self.lng_step = cell_size_m / (METERS_PER_DEGREE_LAT * cos_lat)

        self.height = max(1, math.ceil((bounds.max_latitude - bounds.min_latitude) / self.lat_step))
        self.width = max(1, math.ceil((bounds.max_longitude - bounds.min_longitude) / self.lng_step))

    def cells(self) -> List[GridCell]:
        """All cell centres, row by row from the south-west corner."""
        cells = []
        for row in range(self.height):
            lat = self.bounds.min_latitude + (row + 0.5) * self.lat_step
            for col in range(self.width):
                lng = self.bounds.min_longitude + (col + 0.5) * self.lng_step
                cells.append(GridCell(row, col, lat, lng))
        return cells

    def populate(self, cells: List[GridCell], settlements: Sequence[Settlement],
                 radius_m: float = 5000.0) -> List[GridCell]:
        """
        Estimate population and region for each cell.

        population = sum of settlement population * max(0, 1 - d / radius).
        The region is that of the nearest settlement.
        """
        if not settlements:
            return cells

        lats = np.array([s.lat for s in settlements], dtype=float)
        lngs = np.array([s.lng for s in settlements], dtype=float)
        pops = np.array([s.effective_population for s in settlements], dtype=float)

        for cell in cells:
            distances = haversine_many(cell.lat, cell.lng, lats, lngs)
            falloff = np.clip(1.0 - distances / radius_m, 0.0, None)
            cell.estimated_population = float((pops * falloff).sum())
            cell.region = settlements[int(np.argmin(distances))].region
        return cells


def bounds_from_settlements(settlements: Sequence[Settlement], padding_deg: float = 0.05) -> Optional[BoundingBox]:
    """Smallest box around the settlements, padded by a small margin."""
    if not settlements:
        return None
    return BoundingBox(
        min_latitude=min(s.lat for s in settlements) - padding_deg,
        max_latitude=max(s.lat for s in settlements) + padding_deg,
        min_longitude=min(s.lng for s in settlements) - padding_deg,
        max_longitude=max(s.lng for s in settlements) + padding_deg,
    )
