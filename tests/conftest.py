"""
Pytest configuration and shared fixtures for the RSSI positioning tests.

Provides anchor layouts, pipeline configurations and small helpers shared
by the filter, trilateration, EKF and pipeline tests.
"""

import sys
import math
from pathlib import Path
from typing import List, Tuple

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rssi_core.localization import AnchorGeometry, MapBounds, PipelineConfig
from rssi_core.metrics import reset_metrics
from rssi_core.proto import RssiSample


# =============================================================================
# Metrics
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield


# =============================================================================
# Anchor Configuration Fixtures
# =============================================================================


@pytest.fixture
def right_triangle_anchors() -> List[AnchorGeometry]:
    """
    Anchors at (0, 0), (10, 0), (0, 10).

    Returns:
        List of 3 AnchorGeometry.
    """
    return [
        AnchorGeometry("A0", 0.0, 0.0),
        AnchorGeometry("A1", 10.0, 0.0),
        AnchorGeometry("A2", 0.0, 10.0),
    ]


@pytest.fixture
def room_anchors() -> List[AnchorGeometry]:
    """
    Anchors at (0, 0), (20, 0), (0, 20) covering a 20 x 20 room.

    Returns:
        List of 3 AnchorGeometry.
    """
    return [
        AnchorGeometry("AP1", 0.0, 0.0),
        AnchorGeometry("AP2", 20.0, 0.0),
        AnchorGeometry("AP3", 0.0, 20.0),
    ]


@pytest.fixture
def room_bounds() -> MapBounds:
    """Bounding box of the 20 x 20 room."""
    return MapBounds(min_x=0.0, max_x=20.0, min_y=0.0, max_y=20.0)


@pytest.fixture
def pipeline_config(room_anchors, room_bounds) -> PipelineConfig:
    """
    Room pipeline configuration: reference -40 dBm, n = 2.5, Kalman type A.

    Returns:
        PipelineConfig
    """
    return PipelineConfig(
        anchors=room_anchors,
        map_bounds=room_bounds,
        path_loss_exponent=2.5,
        kalman_noise=1.0,
        feedback_alpha=0.5,
        filter_variant="kalman_a",
        reference_rssi_dbm=-40.0,
    )


# =============================================================================
# Helper Functions
# =============================================================================


def calculate_distance_2d(
    p1: Tuple[float, float], p2: Tuple[float, float]
) -> float:
    """
    Calculate Euclidean distance between two 2D points.

    Args:
        p1: First point (x, y).
        p2: Second point (x, y).

    Returns:
        Distance in the same units as input.
    """
    return math.sqrt((p1[0] - p2[0]) ** 2 + (p1[1] - p2[1]) ** 2)


def make_cycle(rssi_by_anchor: dict, t: float = 0.0) -> List[RssiSample]:
    """
    Build one scan cycle.

    Args:
        rssi_by_anchor: anchor_id -> RSSI (dBm)
        t: Scan time

    Returns:
        List of RssiSample
    """
    return [
        RssiSample(anchor_id=anchor_id, rssi_dbm=rssi, timestamp=t)
        for anchor_id, rssi in rssi_by_anchor.items()
    ]
