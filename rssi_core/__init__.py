"""
RSSI Positioning Core Package.

3-Anchor Wi-Fi RSSI positioning: per-anchor signal filtering, path-loss
ranging, closed-form trilateration and optional EKF refinement.

Package structure:
- proto: Sample / estimate schemas
- localization: Filters, path-loss model, trilateration, EKF, pipeline
- metrics: Diagnostics, counters, histograms
- config / cli: Default tunables and the rssi-replay command
"""

__version__ = "0.1.0"
__author__ = "RSSI Positioning Team"
