"""
Log-Distance Path-Loss Model.

Converts a (filtered) RSSI value to a distance estimate:

    d = 10 ^ ((RSSI_ref - RSSI) / (10 * n))

where RSSI_ref is the RSSI measured at 1 m and n is the path-loss exponent
(typically 2.0-4.0 indoors).
"""

from dataclasses import dataclass
import math

from rssi_core.errors import InvalidParameter

# Signal bar range used for the per-AP level indicator
MIN_LEVEL_RSSI_DBM = -100.0
MAX_LEVEL_RSSI_DBM = -55.0


@dataclass(frozen=True)
class PathLossModel:
    """
    Log-distance path-loss model with a fixed 1 m reference.

    Usage:
        model = PathLossModel(reference_rssi_dbm=-40.0)
        d = model.distance(-60.0, n=2.5)   # ~6.31 m

    Attributes:
        reference_rssi_dbm: RSSI at 1 meter from the anchor (dBm)
    """

    reference_rssi_dbm: float = -40.0

    def __post_init__(self):
        if not math.isfinite(self.reference_rssi_dbm):
            raise InvalidParameter(
                f"Reference RSSI must be finite: {self.reference_rssi_dbm}"
            )

    def distance(self, filtered_rssi: float, n: float) -> float:
        """
        Convert RSSI to distance.

        Args:
            filtered_rssi: RSSI in dBm (usually the output of a filter)
            n: Path-loss exponent, must be > 0

        Returns:
            Distance in meters (same units as the 1 m reference)

        Raises:
            InvalidParameter: n <= 0, non-finite inputs, or an RSSI so far
                from the reference that the distance is not representable
        """
        _check_exponent(n)

        if not math.isfinite(filtered_rssi):
            raise InvalidParameter(f"RSSI must be finite: {filtered_rssi}")

        try:
            d = 10.0 ** ((self.reference_rssi_dbm - filtered_rssi) / (10.0 * n))
        except OverflowError:
            raise InvalidParameter(
                f"RSSI {filtered_rssi} dBm gives an out-of-range distance (n={n})"
            ) from None

        if not math.isfinite(d):
            raise InvalidParameter(
                f"RSSI {filtered_rssi} dBm gives a non-finite distance (n={n})"
            )

        return d

    def rssi_at_distance(self, distance_m: float, n: float) -> float:
        """
        Expected RSSI at a given distance (inverse of distance()).

        Args:
            distance_m: Distance in meters, must be > 0
            n: Path-loss exponent, must be > 0

        Returns:
            RSSI in dBm
        """
        _check_exponent(n)

        if not (distance_m > 0 and math.isfinite(distance_m)):
            raise InvalidParameter(f"Distance must be positive: {distance_m}")

        return self.reference_rssi_dbm - 10.0 * n * math.log10(distance_m)


def _check_exponent(n: float):
    if not (math.isfinite(n) and n > 0):
        raise InvalidParameter(f"Path-loss exponent must be > 0: {n}")


def signal_level(rssi_dbm: float, num_levels: int = 4) -> int:
    """
    Map RSSI to a coarse signal bar level.

    Args:
        rssi_dbm: Raw RSSI in dBm
        num_levels: Number of levels (bars), >= 2

    Returns:
        Level in [0, num_levels - 1]; weaker than -100 dBm is 0 and
        stronger than -55 dBm is the top level
    """
    if num_levels < 2:
        raise InvalidParameter(f"num_levels must be >= 2: {num_levels}")

    if rssi_dbm <= MIN_LEVEL_RSSI_DBM:
        return 0
    if rssi_dbm >= MAX_LEVEL_RSSI_DBM:
        return num_levels - 1

    input_range = MAX_LEVEL_RSSI_DBM - MIN_LEVEL_RSSI_DBM
    output_range = num_levels - 1
    return int((rssi_dbm - MIN_LEVEL_RSSI_DBM) * output_range / input_range)
