"""
Static anchor and map geometry.

Anchor coordinates and the map bounding box are configured once per session
and never change afterwards.
"""

from dataclasses import dataclass
from typing import Tuple
import math

from rssi_core.errors import InvalidParameter


@dataclass(frozen=True)
class AnchorGeometry:
    """
    Fixed access point used as a positioning reference.

    Attributes:
        anchor_id: Anchor identifier (BSSID in practice, e.g. "b6:e6:2d:23:84:90")
        x: X coordinate in map units
        y: Y coordinate in map units
    """

    anchor_id: str
    x: float
    y: float

    def __post_init__(self):
        """Validate anchor geometry."""
        if not self.anchor_id:
            raise InvalidParameter("Anchor ID cannot be empty")

        if not (math.isfinite(self.x) and math.isfinite(self.y)):
            raise InvalidParameter(
                f"Anchor {self.anchor_id} has non-finite coordinates: ({self.x}, {self.y})"
            )

    @property
    def position(self) -> Tuple[float, float]:
        """(x, y) tuple."""
        return (self.x, self.y)

    def distance_to(self, x: float, y: float) -> float:
        """Euclidean distance from this anchor to (x, y)."""
        return math.hypot(x - self.x, y - self.y)

    def to_dict(self) -> dict:
        return {'anchor_id': self.anchor_id, 'x': self.x, 'y': self.y}


@dataclass(frozen=True)
class MapBounds:
    """
    Axis-aligned bounding box of the map.

    Estimated positions are clamped into this box before being emitted.
    """

    min_x: float
    max_x: float
    min_y: float
    max_y: float

    def __post_init__(self):
        """Validate bounds ordering."""
        if self.min_x > self.max_x:
            raise InvalidParameter(f"min_x {self.min_x} > max_x {self.max_x}")

        if self.min_y > self.max_y:
            raise InvalidParameter(f"min_y {self.min_y} > max_y {self.max_y}")

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y

    def clamp(self, x: float, y: float) -> Tuple[float, float]:
        """
        Clamp a point into the box.

        Args:
            x: X coordinate
            y: Y coordinate

        Returns:
            (x, y) with each coordinate limited to its [min, max] range
        """
        return (
            min(max(x, self.min_x), self.max_x),
            min(max(y, self.min_y), self.max_y),
        )
