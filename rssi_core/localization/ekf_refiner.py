"""
EKF Position Refiner.

Second stage on top of trilateration. Treats the trilaterated point as a
measurement of a static target and runs one predict/update cycle per scan:

    Predict:  x = F x,          P = F P F^T + Q        (F = I)
    Update:   S = H P H^T + R,  K = P H^T S^-1         (H = I)
              x = x + K (z - H x)
              P = P - K H P

The a-posteriori state of one cycle is the a-priori state of the next.

refine_with_ranges() is the nonlinear variant: the measurement is the vector
of anchor distances and H is the Jacobian of the range model, so the filter
corrects position directly from distances.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import logging
import math

import numpy as np

from .anchor_geometry import AnchorGeometry
from rssi_core.errors import InvalidParameter, SingularCovariance
from rssi_core.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class EKFState:
    """
    EKF mean and covariance.

    Attributes:
        mean: State vector, shape (n,)
        covariance: State covariance, shape (n, n)
    """

    mean: np.ndarray
    covariance: np.ndarray

    def __post_init__(self):
        """Coerce to float arrays and check shapes."""
        self.mean = np.asarray(self.mean, dtype=float).reshape(-1)
        self.covariance = np.asarray(self.covariance, dtype=float)

        n = self.mean.shape[0]
        if n == 0:
            raise InvalidParameter("EKF state cannot be empty")

        if self.covariance.shape != (n, n):
            raise InvalidParameter(
                f"Covariance shape {self.covariance.shape} does not match mean size {n}"
            )

        if not (np.all(np.isfinite(self.mean)) and np.all(np.isfinite(self.covariance))):
            raise InvalidParameter("EKF state contains non-finite values")

    @property
    def dimension(self) -> int:
        return self.mean.shape[0]

    @property
    def position_std(self) -> Tuple[float, ...]:
        """Standard deviations (sqrt of the covariance diagonal)."""
        return tuple(float(np.sqrt(max(v, 0.0))) for v in np.diag(self.covariance))

    def copy(self) -> "EKFState":
        return EKFState(self.mean.copy(), self.covariance.copy())

    def to_dict(self) -> dict:
        return {
            'mean': self.mean.tolist(),
            'covariance': self.covariance.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EKFState":
        return cls(mean=data['mean'], covariance=data['covariance'])


@dataclass
class EKFRefinerConfig:
    """
    Configuration for the EKF refiner.

    Attributes:
        dimension: State size (2 for (x, y); 1 reproduces the scalar case)
        process_noise: Diagonal of Q
        measurement_noise: Diagonal of R
        initial_covariance: Diagonal of P when seeding from a measurement
    """

    dimension: int = 2
    process_noise: float = 0.001
    measurement_noise: float = 0.1
    initial_covariance: float = 1.0

    def validate(self):
        if self.dimension < 1:
            raise InvalidParameter(f"EKF dimension must be >= 1: {self.dimension}")

        for name in ('process_noise', 'measurement_noise'):
            value = getattr(self, name)
            if not (math.isfinite(value) and value >= 0):
                raise InvalidParameter(f"{name} must be >= 0: {value}")

        if not (math.isfinite(self.initial_covariance) and self.initial_covariance > 0):
            raise InvalidParameter(
                f"initial_covariance must be > 0: {self.initial_covariance}"
            )


def range_jacobian(
    position: Sequence[float],
    anchors: Sequence[AnchorGeometry],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Predicted anchor distances and their Jacobian at a position.

    Args:
        position: (x, y)
        anchors: Anchors to range to

    Returns:
        (h, H): h[i] = |p - a_i|, H[i] = [(x - x_i) / h_i, (y - y_i) / h_i]

    Notes:
        Rows for an anchor coincident with the position are left at zero.
    """
    x, y = float(position[0]), float(position[1])

    h = np.zeros(len(anchors))
    H = np.zeros((len(anchors), 2))

    for i, anchor in enumerate(anchors):
        dx = x - anchor.x
        dy = y - anchor.y
        r = math.hypot(dx, dy)
        h[i] = r
        if r > 1e-9:
            H[i, 0] = dx / r
            H[i, 1] = dy / r

    return h, H


class EKFRefiner:
    """
    Static-target EKF over the position state.

    Usage:
        refiner = EKFRefiner()
        state = refiner.refine((x, y))     # first call seeds the state
        state = refiner.refine((x2, y2))   # later calls refine it
        x_ref, y_ref = state.mean
    """

    def __init__(
        self,
        config: Optional[EKFRefinerConfig] = None,
        initial_state: Optional[EKFState] = None,
    ):
        self.config = config or EKFRefinerConfig()
        self.config.validate()
        self.metrics = get_metrics()

        n = self.config.dimension
        self.F = np.eye(n)
        self.Q = np.eye(n) * self.config.process_noise
        self.R = np.eye(n) * self.config.measurement_noise

        self._state: Optional[EKFState] = None
        if initial_state is not None:
            self._check_dimension(initial_state.dimension)
            self._state = initial_state.copy()

    def is_initialized(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> Optional[EKFState]:
        """Copy of the current a-posteriori state (None before the first cycle)."""
        return self._state.copy() if self._state is not None else None

    def refine(self, measured: Sequence[float]) -> EKFState:
        """
        Run one predict/update cycle with a position measurement.

        Args:
            measured: Measured state (e.g. trilaterated (x, y))

        Returns:
            New a-posteriori EKFState

        Raises:
            InvalidParameter: Wrong size or non-finite measurement
            SingularCovariance: S not invertible (state unchanged)
        """
        z = np.asarray(measured, dtype=float).reshape(-1)
        self._check_dimension(z.shape[0])
        if not np.all(np.isfinite(z)):
            raise InvalidParameter(f"Measurement must be finite: {z}")

        prior = self._state
        if prior is None:
            prior = EKFState(z.copy(), np.eye(z.shape[0]) * self.config.initial_covariance)

        x, P = self._predict(prior)

        H = np.eye(x.shape[0])
        y = z - H @ x
        x, P = self._update(x, P, y, H, self.R)

        self._state = EKFState(x, P)

        innovation_m = float(np.linalg.norm(y))
        self.metrics.increment('ekf_updates')
        self.metrics.record_histogram('ekf_innovation_m', innovation_m)
        logger.debug(f"EKF refine: z={z} -> x={x}, trace(P)={np.trace(P):.5f}")

        return self._state.copy()

    def refine_with_ranges(
        self,
        distances: Sequence[float],
        anchors: Sequence[AnchorGeometry],
        range_noise: Optional[float] = None,
    ) -> EKFState:
        """
        Run one nonlinear cycle with anchor distances as the measurement.

        Args:
            distances: Measured distance to each anchor
            anchors: Anchors, same order as distances
            range_noise: Range variance (defaults to measurement_noise)

        Returns:
            New a-posteriori EKFState

        Raises:
            InvalidParameter: Not a 2D initialized filter, or bad inputs
            SingularCovariance: S not invertible (state unchanged)
        """
        if self.config.dimension != 2:
            raise InvalidParameter("Range measurements need a 2D state")

        if self._state is None:
            raise InvalidParameter("Range refinement needs an initialized state")

        z = np.asarray(distances, dtype=float).reshape(-1)
        if z.shape[0] != len(anchors) or z.shape[0] == 0:
            raise InvalidParameter(
                f"Got {z.shape[0]} distances for {len(anchors)} anchors"
            )
        if not np.all(np.isfinite(z)) or np.any(z < 0):
            raise InvalidParameter(f"Invalid distances: {z}")

        noise = self.config.measurement_noise if range_noise is None else range_noise
        if not (math.isfinite(noise) and noise >= 0):
            raise InvalidParameter(f"range_noise must be >= 0: {noise}")

        x, P = self._predict(self._state)

        h, H = range_jacobian(x, anchors)
        y = z - h
        R = np.eye(z.shape[0]) * noise
        x, P = self._update(x, P, y, H, R)

        self._state = EKFState(x, P)

        self.metrics.increment('ekf_range_updates')
        self.metrics.record_histogram('ekf_innovation_m', float(np.linalg.norm(y)))

        return self._state.copy()

    def reset(self, initial_state: Optional[EKFState] = None):
        """Drop the current state (optionally replacing it)."""
        if initial_state is not None:
            self._check_dimension(initial_state.dimension)
            initial_state = initial_state.copy()
        self._state = initial_state

    def _predict(self, state: EKFState) -> Tuple[np.ndarray, np.ndarray]:
        """Predict (pure: returns new arrays)."""
        x = self.F @ state.mean
        P = self.F @ state.covariance @ self.F.T + self.Q
        return x, P

    def _update(
        self,
        x: np.ndarray,
        P: np.ndarray,
        y: np.ndarray,
        H: np.ndarray,
        R: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Kalman update with innovation y (pure: returns new arrays)."""
        S = H @ P @ H.T + R
        S_inv = self._invert(S)

        K = P @ H.T @ S_inv
        x = x + K @ y
        P = P - K @ H @ P

        # Keep P symmetric against round-off
        P = 0.5 * (P + P.T)

        return x, P

    def _invert(self, S: np.ndarray) -> np.ndarray:
        try:
            S_inv = np.linalg.inv(S)
        except np.linalg.LinAlgError as e:
            self.metrics.increment_drop('singular_covariance')
            raise SingularCovariance(f"Innovation covariance not invertible: {e}") from e

        if not np.all(np.isfinite(S_inv)):
            self.metrics.increment_drop('singular_covariance')
            raise SingularCovariance("Innovation covariance inverse is not finite")

        return S_inv

    def _check_dimension(self, n: int):
        if n != self.config.dimension:
            raise InvalidParameter(
                f"Expected dimension {self.config.dimension}, got {n}"
            )
