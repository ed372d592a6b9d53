"""
Position Estimate Output Schema.

Defines the per-cycle output of the positioning pipeline: the position
estimate plus, for display and debugging, each tracked anchor's filtered
RSSI and distance for every filter variant.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import IntEnum

from rssi_core.errors import InvalidParameter


class FixType(IntEnum):
    """Type of position fix."""

    NO_FIX = 0          # Fewer than 3 anchors have reported
    FIX_2D = 1          # Trilaterated position
    REFINED = 2         # Trilaterated + EKF refined


@dataclass
class PositionEstimate:
    """
    Device position estimate for one scan cycle.

    Attributes:
        x: X coordinate in map units (clamped to the map bounds)
        y: Y coordinate in map units (clamped to the map bounds)
        t_solve: Cycle time (seconds)
        fix_type: NO_FIX, FIX_2D or REFINED
        filter_variant: Filter variant that fed trilateration
        anchor_ids: Anchors used, in trilateration order
        distances: Distance per anchor used for the solve

        # Optional diagnostics
        raw_position: Trilaterated position before EKF and clamping
        residual_m: RMS range residual of the trilateration
        pos_std: Position standard deviation from the EKF covariance
        clamped: True if the position was moved into the map bounds

    Notes:
        - For NO_FIX, x/y hold the last position passed in (default origin)
    """

    x: float
    y: float
    t_solve: float
    fix_type: FixType
    filter_variant: str = ""
    anchor_ids: list = field(default_factory=list)
    distances: Dict[str, float] = field(default_factory=dict)

    # Optional fields
    raw_position: Optional[Tuple[float, float]] = None
    residual_m: Optional[float] = None
    pos_std: Optional[Tuple[float, float]] = None
    clamped: bool = False

    def __post_init__(self):
        """Validate position estimate."""
        if self.residual_m is not None and self.residual_m < 0:
            raise InvalidParameter(f"Residual cannot be negative: {self.residual_m}")

        for anchor_id, d in self.distances.items():
            if d < 0:
                raise InvalidParameter(f"Distance to {anchor_id} cannot be negative: {d}")

    @property
    def has_valid_fix(self) -> bool:
        """Check if this is a valid position fix (not NO_FIX)."""
        return self.fix_type != FixType.NO_FIX

    @property
    def is_refined(self) -> bool:
        return self.fix_type == FixType.REFINED

    @property
    def position(self) -> Tuple[float, float]:
        """(x, y) tuple."""
        return (self.x, self.y)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'x': self.x,
            'y': self.y,
            't_solve': self.t_solve,
            'fix_type': self.fix_type.name,
            'filter_variant': self.filter_variant,
            'anchor_ids': list(self.anchor_ids),
            'distances': dict(self.distances),
            'raw_position': self.raw_position,
            'residual_m': self.residual_m,
            'pos_std': self.pos_std,
            'clamped': self.clamped,
        }


def create_no_fix(
    t_solve: float,
    filter_variant: str = "",
    last_position: Tuple[float, float] = (0.0, 0.0),
) -> PositionEstimate:
    """
    Create a NO_FIX position estimate.

    Args:
        t_solve: Cycle time
        filter_variant: Selected filter variant
        last_position: Last known position (default: origin)

    Returns:
        PositionEstimate with NO_FIX
    """
    return PositionEstimate(
        x=last_position[0],
        y=last_position[1],
        t_solve=t_solve,
        fix_type=FixType.NO_FIX,
        filter_variant=filter_variant,
    )


@dataclass
class VariantReading:
    """Filtered RSSI and derived distance of one filter variant."""

    filtered_rssi_dbm: float
    distance_m: float
    variance: float

    def to_dict(self) -> dict:
        return {
            'filtered_rssi_dbm': self.filtered_rssi_dbm,
            'distance_m': self.distance_m,
            'variance': self.variance,
        }


@dataclass
class AnchorReading:
    """
    Latest per-anchor values of a tracked anchor.

    Attributes:
        anchor_id: Anchor identifier
        rssi_dbm: Last raw RSSI
        raw_distance_m: Distance from the unfiltered RSSI
        sample_count: Samples seen for this anchor
        t_last: Time of the last sample
        variants: Filter variant name -> VariantReading
        is_fresh: True if the anchor reported in the current cycle
    """

    anchor_id: str
    rssi_dbm: float
    raw_distance_m: float
    sample_count: int
    t_last: float
    variants: Dict[str, VariantReading] = field(default_factory=dict)
    is_fresh: bool = True

    def distance(self, variant: str) -> float:
        """Distance derived from the given variant's filtered RSSI."""
        return self.variants[variant].distance_m

    def filtered_rssi(self, variant: str) -> float:
        return self.variants[variant].filtered_rssi_dbm

    def to_dict(self) -> dict:
        return {
            'anchor_id': self.anchor_id,
            'rssi_dbm': self.rssi_dbm,
            'raw_distance_m': self.raw_distance_m,
            'sample_count': self.sample_count,
            't_last': self.t_last,
            'variants': {str(k): v.to_dict() for k, v in self.variants.items()},
            'is_fresh': self.is_fresh,
        }


@dataclass
class CycleResult:
    """
    Everything the pipeline emits for one scan cycle.

    Attributes:
        position: Position estimate (NO_FIX if not solvable yet)
        readings: Tracked anchor ID -> AnchorReading
        access_points: Every AP seen this cycle, strongest first
    """

    position: PositionEstimate
    readings: Dict[str, AnchorReading] = field(default_factory=dict)
    access_points: List = field(default_factory=list)

    @property
    def has_position(self) -> bool:
        return self.position.has_valid_fix

    def to_dict(self) -> dict:
        return {
            'position': self.position.to_dict(),
            'readings': {k: v.to_dict() for k, v in self.readings.items()},
            'access_points': [ap.to_dict() for ap in self.access_points],
        }
