"""
Protocol Module: Sample and estimate schemas.

- Input: RssiSample (one per access point per scan)
- Output: CycleResult (position + per-anchor readings + AP records)
"""

from .sample import (
    RssiSample,
    AccessPointRecord,
)
from .position_estimate import (
    PositionEstimate,
    FixType,
    create_no_fix,
    VariantReading,
    AnchorReading,
    CycleResult,
)

__all__ = [
    # Input
    'RssiSample',
    'AccessPointRecord',
    # Output
    'PositionEstimate',
    'FixType',
    'create_no_fix',
    'VariantReading',
    'AnchorReading',
    'CycleResult',
]
