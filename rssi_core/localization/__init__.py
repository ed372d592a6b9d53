"""
Localization Module: RSSI filtering, ranging, trilateration, EKF.

Key classes:
- PathLossModel: RSSI <-> distance (log-distance model)
- AnchorFilterBank: Per-anchor Kalman A / Kalman B / feedback filters
- Trilateration: Closed-form 3-anchor 2D solve
- EKFRefiner: Static-target EKF over the trilaterated position
- PositioningPipeline: Per-session orchestration of all of the above
"""

from rssi_core.errors import (
    PositioningError,
    InvalidParameter,
    SingularGeometry,
    SingularCovariance,
)
from .anchor_geometry import AnchorGeometry, MapBounds
from .path_loss import PathLossModel, signal_level
from .anchor_filters import (
    FilterVariant,
    FilterResult,
    AnchorFilterState,
    KalmanTypeA,
    KalmanTypeB,
    FeedbackFilter,
    AnchorFilterBank,
    AnchorFilterBankConfig,
)
from .trilateration import (
    Trilateration,
    TrilaterationConfig,
)
from .ekf_refiner import (
    EKFRefiner,
    EKFRefinerConfig,
    EKFState,
    range_jacobian,
)
from .positioning_pipeline import (
    PositioningPipeline,
    PipelineConfig,
    create_default_pipeline,
)

__all__ = [
    # Errors
    'PositioningError',
    'InvalidParameter',
    'SingularGeometry',
    'SingularCovariance',
    # Geometry
    'AnchorGeometry',
    'MapBounds',
    # Ranging
    'PathLossModel',
    'signal_level',
    # Filters
    'FilterVariant',
    'FilterResult',
    'AnchorFilterState',
    'KalmanTypeA',
    'KalmanTypeB',
    'FeedbackFilter',
    'AnchorFilterBank',
    'AnchorFilterBankConfig',
    # Trilateration
    'Trilateration',
    'TrilaterationConfig',
    # EKF
    'EKFRefiner',
    'EKFRefinerConfig',
    'EKFState',
    'range_jacobian',
    # Pipeline
    'PositioningPipeline',
    'PipelineConfig',
    'create_default_pipeline',
]
