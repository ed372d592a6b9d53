"""
Scan Sample Schemas.

One RssiSample is produced per detected access point per Wi-Fi scan cycle.
Samples from the three tracked anchors drive positioning; all others are
only recorded as AccessPointRecord for display.
"""

from dataclasses import dataclass
from typing import Optional
import math

from rssi_core.errors import InvalidParameter


@dataclass
class RssiSample:
    """
    RSSI reading of one access point.

    Attributes:
        anchor_id: Access point identifier (BSSID)
        rssi_dbm: Received signal strength (dBm)
        timestamp: Scan time (seconds)
        ssid: Network name, if known
        frequency_mhz: Channel frequency (MHz), if known
        capabilities: Security capabilities string, if known

    Notes:
        - RSSI must be finite; real readings are negative dBm values
    """

    anchor_id: str
    rssi_dbm: float
    timestamp: float = 0.0
    ssid: str = ""
    frequency_mhz: Optional[int] = None
    capabilities: str = ""

    def __post_init__(self):
        """Validate sample after initialization."""
        if not self.anchor_id:
            raise InvalidParameter("Sample anchor_id cannot be empty")

        try:
            self.rssi_dbm = float(self.rssi_dbm)
        except (TypeError, ValueError):
            raise InvalidParameter(f"RSSI is not a number: {self.rssi_dbm!r}") from None

        if not math.isfinite(self.rssi_dbm):
            raise InvalidParameter(f"RSSI must be finite: {self.rssi_dbm}")

        if not math.isfinite(self.timestamp):
            raise InvalidParameter(f"Timestamp must be finite: {self.timestamp}")

    @classmethod
    def from_dict(cls, data: dict, timestamp: float = 0.0) -> "RssiSample":
        """
        Build a sample from a scan-result dictionary.

        Args:
            data: Dict with at least anchor_id (or bssid) and rssi_dbm (or level)
            timestamp: Fallback timestamp when data has none

        Raises:
            InvalidParameter: Missing or malformed fields
        """
        if not isinstance(data, dict):
            raise InvalidParameter(f"Sample must be an object, got {type(data).__name__}")

        anchor_id = data.get('anchor_id', data.get('bssid'))
        rssi = data.get('rssi_dbm', data.get('level'))
        if anchor_id is None or rssi is None:
            raise InvalidParameter(f"Sample needs anchor_id and rssi_dbm: {data}")

        try:
            t = float(data.get('timestamp', timestamp))
        except (TypeError, ValueError):
            raise InvalidParameter(f"Timestamp is not a number: {data.get('timestamp')!r}") from None

        return cls(
            anchor_id=str(anchor_id),
            rssi_dbm=rssi,
            timestamp=t,
            ssid=data.get('ssid', ""),
            frequency_mhz=data.get('frequency_mhz'),
            capabilities=data.get('capabilities', ""),
        )


@dataclass
class AccessPointRecord:
    """
    Display record of an access point seen in a scan.

    Attributes:
        anchor_id: BSSID
        ssid: Network name
        rssi_dbm: Raw RSSI (dBm)
        frequency_mhz: Channel frequency (MHz)
        capabilities: Security capabilities
        raw_distance_m: Path-loss distance from the unfiltered RSSI
        signal_level: Coarse signal bar level (0-3)
        is_tracked: True for the three positioning anchors
    """

    anchor_id: str
    ssid: str
    rssi_dbm: float
    frequency_mhz: Optional[int]
    capabilities: str
    raw_distance_m: float
    signal_level: int
    is_tracked: bool = False

    def to_dict(self) -> dict:
        return {
            'anchor_id': self.anchor_id,
            'ssid': self.ssid,
            'rssi_dbm': self.rssi_dbm,
            'frequency_mhz': self.frequency_mhz,
            'capabilities': self.capabilities,
            'raw_distance_m': self.raw_distance_m,
            'signal_level': self.signal_level,
            'is_tracked': self.is_tracked,
        }
