"""
RSSI scan replay from a source checkout.

    python main.py recording.jsonl --ekf

Installed copies use the rssi-replay command instead.
"""

import sys

from rssi_core.cli import main


if __name__ == "__main__":
    sys.exit(main())
