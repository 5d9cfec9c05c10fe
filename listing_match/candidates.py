from __future__ import annotations
import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

from .geo import EARTH_RADIUS_M, distance_meters
from .models import AddressRecord, Coordinate

logger = logging.getLogger(__name__)

_M_PER_DEG = math.pi * EARTH_RADIUS_M / 180.0

Cell = Tuple[int, int]


class CandidateGenerator:
    """Grid index over reference addresses for radius queries.

    Cells are 10^-grid_precision degrees on each side. A query scans every
    cell that can hold a point within the radius, then filters by exact
    distance. Results keep insertion order.
    """

    def __init__(self, grid_precision: int = 2):
        self.grid_precision = grid_precision
        self.step = 10 ** (-grid_precision)
        self._lng_cells = int(round(360.0 / self.step))
        self._cells: Dict[Cell, List[Tuple[int, AddressRecord]]] = {}
        self._by_id: Dict[str, Tuple[int, AddressRecord]] = {}
        self._seq = 0

    def __len__(self) -> int:
        return len(self._by_id)

    def geo_bucket(self, c: Coordinate) -> Cell:
        return (math.floor(c.lat / self.step), self._wrap(math.floor(c.lng / self.step)))

    def _wrap(self, j: int) -> int:
        # longitude cells wrap at the antimeridian
        half = self._lng_cells // 2
        return (j + half) % self._lng_cells - half

    def add(self, rec: AddressRecord) -> None:
        if rec.id in self._by_id:
            self.remove(rec.id)
        entry = (self._seq, rec)
        self._seq += 1
        self._by_id[rec.id] = entry
        self._cells.setdefault(self.geo_bucket(rec.coordinates), []).append(entry)

    def add_all(self, records: Iterable[AddressRecord]) -> None:
        for rec in records:
            self.add(rec)

    def remove(self, address_id: str) -> None:
        entry = self._by_id.pop(address_id, None)
        if entry is None:
            return
        cell = self.geo_bucket(entry[1].coordinates)
        bucket = [e for e in self._cells.get(cell, []) if e[0] != entry[0]]
        if bucket:
            self._cells[cell] = bucket
        else:
            self._cells.pop(cell, None)

    def get(self, address_id: str) -> Optional[AddressRecord]:
        entry = self._by_id.get(address_id)
        return entry[1] if entry else None

    def all(self) -> List[AddressRecord]:
        return [rec for _, rec in sorted(self._by_id.values(), key=lambda e: e[0])]

    def geo_neighbors(self, c: Coordinate, radius_m: float) -> Optional[List[Cell]]:
        """Cells covering the radius around c, or None when a full scan is cheaper."""
        k_lat = int(radius_m / (self.step * _M_PER_DEG)) + 1
        # longitude cells shrink toward the poles; use the widest latitude the radius reaches
        edge_lat = min(90.0, abs(c.lat) + (k_lat + 1) * self.step)
        cos_lat = math.cos(math.radians(edge_lat))
        if cos_lat <= 1e-9:
            return None
        k_lng = int(radius_m / (self.step * _M_PER_DEG * cos_lat)) + 1
        if (2 * k_lat + 1) * (2 * k_lng + 1) > max(len(self._cells), 1) * 4:
            return None
        ci, cj = self.geo_bucket(c)
        cols = {self._wrap(cj + dj) for dj in range(-k_lng, k_lng + 1)}
        return [(ci + di, j) for di in range(-k_lat, k_lat + 1) for j in cols]

    def candidates_near(self, c: Coordinate, radius_m: float) -> List[AddressRecord]:
        if radius_m < 0:
            return []
        cells = self.geo_neighbors(c, radius_m)
        if cells is None:
            entries = list(self._by_id.values())
        else:
            entries = []
            for cell in cells:
                entries.extend(self._cells.get(cell, []))
        entries.sort(key=lambda e: e[0])
        out = [rec for _, rec in entries if distance_meters(c, rec.coordinates) <= radius_m]
        logger.debug("Grid query (%.5f, %.5f) r=%.0fm: %d scanned, %d kept",
                     c.lat, c.lng, radius_m, len(entries), len(out))
        return out
