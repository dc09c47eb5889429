"""Discovery pass: turn a radio scan into portal candidates."""

import logging
from dataclasses import dataclass

import wifi_controller

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkCandidate:
    ssid: str
    is_open: bool
    rssi: int = 0


class NetworkScanner:
    """Blocking wrapper around the radio scan.

    Duplicate SSIDs (several BSSes advertising the same name) are kept; each
    one is a separate candidate.
    """

    def __init__(self, radio=wifi_controller):
        self.radio = radio

    def scan(self):
        """Return a list of NetworkCandidate. Raises ScanUnavailable."""
        result = self.radio.scan()
        candidates = [
            NetworkCandidate(
                ssid=net["ssid"],
                is_open=net.get("auth", "OPEN") == "OPEN",
                rssi=net.get("rssi", 0),
            )
            for net in result.get("networks", [])
        ]
        n_open = sum(1 for c in candidates if c.is_open)
        logger.info("Scan found %d networks (%d open)", len(candidates), n_open)
        return candidates
