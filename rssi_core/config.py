"""
RSSI positioning configuration defaults.

Used by the rssi-replay command; library callers pass their own dicts to
create_default_pipeline().
"""

# Pipeline tunables
PIPELINE_CONFIG = {
    "path_loss_exponent": 2.5,        # n, typically 2.0-4.0 indoors
    "reference_rssi_dbm": -40.0,      # RSSI at 1 m
    "kalman_noise": 1.0,              # q for Kalman type A / B
    "feedback_alpha": 0.5,            # feedback filter blend factor, (0, 1)
    "filter_variant": "kalman_a",     # kalman_a | kalman_b | feedback
    "ekf_enabled": False,             # EKF refinement stage
    "history_window": 500,            # per-anchor RSSI history length
    "couple_feedback_to_kalman": False,
    "round_position": False,          # round to whole map units before clamping
}

# Tracked anchors (BSSID -> map coordinates)
ANCHOR_CONFIG = {
    "b6:e6:2d:23:84:90": {"x": 0.0, "y": 0.0},
    "6a:c6:3a:d6:9c:92": {"x": 20.0, "y": 0.0},
    "be:dd:c2:fe:3b:0b": {"x": 0.0, "y": 20.0},
}

# Map bounding box (positions are clamped into it)
MAP_CONFIG = {
    "min_x": 0.0,
    "max_x": 20.0,
    "min_y": 0.0,
    "max_y": 20.0,
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
