"""
Positioning error kinds.

Every failure of the estimation core is raised as one of these. None of them
is retried here; re-scan / retry policy belongs to the caller.
"""

import numpy as np


class PositioningError(Exception):
    """Base class for all estimation core errors."""


class InvalidParameter(PositioningError, ValueError):
    """
    Invalid tunable or malformed input.

    Raised before any filter or EKF state is mutated, so the cycle that
    triggered it leaves no trace.
    """


class SingularGeometry(PositioningError, np.linalg.LinAlgError):
    """Anchor layout is collinear or coincident; trilateration is ill-posed."""


class SingularCovariance(PositioningError, np.linalg.LinAlgError):
    """EKF innovation covariance could not be inverted."""
