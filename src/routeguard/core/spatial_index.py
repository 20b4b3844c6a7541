"""
Lightweight spatial indexing (grid bucket) for lat/lon points.

Used to avoid O(N) scans over the national hazard dataset (thousands of points)
on every vehicle update. The index is immutable once built; when the dataset
changes a new index is built and swapped in.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from routeguard.core.geo import METERS_PER_LAT, BoundingBox, GeoPoint, haversine_m

T = TypeVar("T")

_MASK32 = 0xFFFF_FFFF


def pack_cell_key(row: int, col: int) -> int:
    """Pack two signed cell coordinates into one 64-bit key."""
    return ((int(row) & _MASK32) << 32) | (int(col) & _MASK32)


@dataclass(frozen=True)
class _Entry(Generic[T]):
    item: T
    lat: float
    lon: float


class SpatialIndex(Generic[T]):
    def __init__(
        self,
        items: list[T],
        *,
        get_latlon: Callable[[T], tuple[float, float]],
        cell_size_deg: float = 0.01,
    ):
        if float(cell_size_deg) <= 0:
            raise ValueError("cell_size_deg must be > 0")
        self._cell_size_deg = float(cell_size_deg)
        self._cells: dict[int, list[_Entry[T]]] = {}
        self._entries: list[_Entry[T]] = []

        for it in items:
            try:
                lat, lon = get_latlon(it)
                lat_f = float(lat)
                lon_f = float(lon)
            except (TypeError, ValueError):
                continue
            if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
                continue
            e = _Entry(item=it, lat=lat_f, lon=lon_f)
            self._entries.append(e)
            self._cells.setdefault(self._cell_key(lat_f, lon_f), []).append(e)

    @classmethod
    def empty(cls) -> "SpatialIndex[T]":
        return cls([], get_latlon=lambda _: (0.0, 0.0))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def cell_size_deg(self) -> float:
        return self._cell_size_deg

    def _cell_rc(self, lat: float, lon: float) -> tuple[int, int]:
        return (
            int(math.floor(lat / self._cell_size_deg)),
            int(math.floor(lon / self._cell_size_deg)),
        )

    def _cell_key(self, lat: float, lon: float) -> int:
        return pack_cell_key(*self._cell_rc(lat, lon))

    def nearest(self, *, lat: float, lon: float, within_m: float) -> T | None:
        """Return the closest item within `within_m` meters, or None.

        Ties keep the first candidate in scan order (rows then columns, each
        cell in build order).
        """
        r = float(within_m)
        if r < 0 or not self._entries:
            return None

        row0, col0 = self._cell_rc(float(lat), float(lon))
        steps = int(math.ceil(r / (self._cell_size_deg * METERS_PER_LAT))) + 1

        origin = GeoPoint(lat=float(lat), lon=float(lon))
        best: _Entry[T] | None = None
        best_d = math.inf
        for dr in range(-steps, steps + 1):
            for dc in range(-steps, steps + 1):
                cell = self._cells.get(pack_cell_key(row0 + dr, col0 + dc))
                if not cell:
                    continue
                for e in cell:
                    d = haversine_m(origin, GeoPoint(lat=e.lat, lon=e.lon))
                    if d <= r and d < best_d:
                        best = e
                        best_d = d
        return best.item if best is not None else None

    def range_query(self, bounds: BoundingBox) -> list[T]:
        """Return every item inside `bounds` (linear scan, build order)."""
        return [e.item for e in self._entries if bounds.contains(e.lat, e.lon)]
