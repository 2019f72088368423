"""Advertisement filtering for Pod discovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .address import format_address
from .config import DEVICE_NAME_PREFIX

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanResult:
    """A discovered Pod as reported to the host.

    Attributes:
        name: Advertised local name, e.g. ``"POD-42"``.
        id: Formatted link-layer address used to connect.
        rssi: Received signal strength in dBm.
    """

    name: str
    id: str
    rssi: int


def accept(advertised_name: Optional[str]) -> bool:
    """Return True if the advertised name identifies a Pod device."""
    if not advertised_name:
        return False
    return advertised_name.upper().startswith(DEVICE_NAME_PREFIX)


def filter_advertisement(
    advertised_name: Optional[str], raw_address: int, rssi: int
) -> Optional[ScanResult]:
    """Build a :class:`ScanResult` for Pod advertisements, ``None`` otherwise."""
    if not accept(advertised_name):
        return None

    result = ScanResult(
        name=str(advertised_name), id=format_address(raw_address), rssi=rssi
    )
    logger.debug("Pod advertisement: %s (%s) rssi=%d", result.name, result.id, rssi)
    return result
