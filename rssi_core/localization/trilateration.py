"""
Closed-Form 3-Anchor Trilateration (2D).

Subtracting the first circle equation from the other two gives a linear
2x2 system in (x, y):

    2(x1 - xi) x + 2(y1 - yi) y = (di^2 - d1^2) - (xi^2 - x1^2) - (yi^2 - y1^2)

for i = 2, 3. The system is solved with Cramer's rule; a determinant below
the configured epsilon means the anchors are collinear or coincident.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import logging
import math

import numpy as np

from .anchor_geometry import AnchorGeometry
from rssi_core.errors import InvalidParameter, SingularGeometry

logger = logging.getLogger(__name__)


@dataclass
class TrilaterationConfig:
    """
    Configuration for trilateration.

    Attributes:
        singular_epsilon: Minimum |det| of the linearized system
    """

    singular_epsilon: float = 1e-9

    def validate(self):
        if not (math.isfinite(self.singular_epsilon) and self.singular_epsilon >= 0):
            raise InvalidParameter(
                f"singular_epsilon must be >= 0: {self.singular_epsilon}"
            )


class Trilateration:
    """
    Solve a 2D position from three anchor distances.

    Usage:
        solver = Trilateration()
        x, y = solver.solve(anchors, [d1, d2, d3])
    """

    def __init__(self, config: Optional[TrilaterationConfig] = None):
        self.config = config or TrilaterationConfig()
        self.config.validate()

    def solve(
        self,
        anchors: Sequence[AnchorGeometry],
        distances: Sequence[float],
    ) -> Tuple[float, float]:
        """
        Solve for (x, y).

        Args:
            anchors: Exactly 3 anchors
            distances: Distance to each anchor, same order

        Returns:
            (x, y) in map units

        Raises:
            InvalidParameter: Wrong counts, negative or non-finite distances,
                or distances too large for the squared-range system
            SingularGeometry: Anchors collinear / coincident
        """
        self._check_inputs(anchors, distances)

        (x1, y1), (x2, y2), (x3, y3) = (a.position for a in anchors)
        d1, d2, d3 = (float(d) for d in distances)

        a11 = 2.0 * (x1 - x2)
        a12 = 2.0 * (y1 - y2)
        a21 = 2.0 * (x1 - x3)
        a22 = 2.0 * (y1 - y3)

        b1 = (d2 ** 2 - d1 ** 2) - (x2 ** 2 - x1 ** 2) - (y2 ** 2 - y1 ** 2)
        b2 = (d3 ** 2 - d1 ** 2) - (x3 ** 2 - x1 ** 2) - (y3 ** 2 - y1 ** 2)

        det = a11 * a22 - a12 * a21
        if abs(det) < self.config.singular_epsilon:
            raise SingularGeometry(
                f"Anchors {[a.anchor_id for a in anchors]} are collinear "
                f"(det={det:.3e} < {self.config.singular_epsilon:.1e})"
            )

        x = (b1 * a22 - a12 * b2) / det
        y = (a11 * b2 - b1 * a21) / det

        if not (math.isfinite(x) and math.isfinite(y)):
            raise InvalidParameter(
                f"Trilateration overflowed for distances ({d1:.3e}, {d2:.3e}, {d3:.3e})"
            )

        logger.debug(f"Trilateration: d=({d1:.2f}, {d2:.2f}, {d3:.2f}) -> ({x:.3f}, {y:.3f})")

        return (x, y)

    @staticmethod
    def residual(
        anchors: Sequence[AnchorGeometry],
        distances: Sequence[float],
        position: Tuple[float, float],
    ) -> float:
        """
        RMS range residual of a solution.

        With noisy distances the three circles rarely meet in one point;
        this measures how far off the solution is from each of them.

        Returns:
            sqrt(mean((|p - a_i| - d_i)^2)) in map units
        """
        computed = np.array([a.distance_to(position[0], position[1]) for a in anchors])
        measured = np.asarray(distances, dtype=float)
        return float(np.sqrt(np.mean((computed - measured) ** 2)))

    @staticmethod
    def _check_inputs(anchors: Sequence[AnchorGeometry], distances: Sequence[float]):
        if len(anchors) != 3:
            raise InvalidParameter(f"Need exactly 3 anchors, got {len(anchors)}")

        if len(distances) != 3:
            raise InvalidParameter(f"Need exactly 3 distances, got {len(distances)}")

        for anchor, d in zip(anchors, distances):
            if not math.isfinite(d) or d < 0:
                raise InvalidParameter(f"Invalid distance to {anchor.anchor_id}: {d}")

            # The linearized system works on squared ranges
            if not math.isfinite(float(d) * float(d)):
                raise InvalidParameter(
                    f"Distance to {anchor.anchor_id} too large to square: {d}"
                )
