"""
Shared fixtures for the Pod connector tests.

It provides:
- FakeTransport: in-memory Transport that records writes and lets tests
  inject advertisements, notifications and link loss
- ManualClock: monotonic clock advanced by hand, for watchdog timing
- Fragment and recording-header builders
"""

import calendar
import struct
from datetime import datetime
from typing import Any, List, Optional

import pytest

from pod_connector.config import SessionTiming
from pod_connector.power import SleepInhibitor
from pod_connector.session import PodSession
from pod_connector.transport import GattEndpoints, Transport

DEVICE_ADDRESS = "c4:7f:51:0a:00:1e"
DEVICE_RAW_ADDRESS = 0xC47F510A001E


# =============================================================================
# Fakes
# =============================================================================


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(Transport):
    """Transport double driven entirely by the test."""

    def __init__(self):
        self.scanning = False
        self.scan_error: Optional[Exception] = None
        self.device_present = True
        self.service_present = True
        self.connect_error: Optional[Exception] = None
        self.write_ok = True

        self.connected_to: List[int] = []
        self.writes: List[bytes] = []
        self.disconnect_calls = 0

        self._on_advertisement = None
        self._on_fragment = None
        self._on_disconnect = None

    async def start_scan(self, on_advertisement) -> None:
        if self.scan_error is not None:
            raise self.scan_error
        self.scanning = True
        self._on_advertisement = on_advertisement

    async def stop_scan(self) -> None:
        self.scanning = False

    async def connect(self, address: int, on_disconnect=None) -> Optional[Any]:
        self.connected_to.append(address)
        if self.connect_error is not None:
            raise self.connect_error
        if not self.device_present:
            return None
        self._on_disconnect = on_disconnect
        return "device"

    async def discover(self, device: Any) -> Optional[GattEndpoints]:
        if not self.service_present:
            return None
        return GattEndpoints(notify="notify-char", write="write-char")

    async def subscribe(self, device: Any, endpoints: GattEndpoints, on_fragment) -> None:
        self._on_fragment = on_fragment

    async def write(self, device: Any, endpoints: GattEndpoints, data: bytes) -> bool:
        self.writes.append(bytes(data))
        return self.write_ok

    async def disconnect(self, device: Any) -> None:
        self.disconnect_calls += 1
        self._on_fragment = None

    # Test controls

    def advertise(self, name: Optional[str], raw_address: int, rssi: int = -60) -> None:
        assert self._on_advertisement is not None, "scan not started"
        self._on_advertisement(name, raw_address, rssi)

    def notify(self, *fragments: bytes) -> None:
        assert self._on_fragment is not None, "not subscribed"
        for fragment in fragments:
            self._on_fragment(fragment)

    def drop_link(self) -> None:
        assert self._on_disconnect is not None, "not connected"
        self._on_disconnect()


class Recorder:
    """Collects every event a session emits."""

    def __init__(self):
        self.statuses: List[str] = []
        self.scan_results = []
        self.payloads: List[bytes] = []
        self.progress = []

    def session_kwargs(self) -> dict:
        return {
            "on_status": self.statuses.append,
            "on_scan_result": self.scan_results.append,
            "on_payload": self.payloads.append,
            "on_progress": self.progress.append,
        }


# =============================================================================
# Frame builders
# =============================================================================


def first_fragment(message_type: int, count: int, data: bytes = b"") -> bytes:
    """First fragment of a message: type, 4 reserved bytes, count, data."""
    return bytes([message_type]) + b"\x00" * 4 + struct.pack("<I", count) + data


def next_fragment(message_type: int, data: bytes = b"") -> bytes:
    """Continuation fragment: type, 4 reserved bytes, data."""
    return bytes([message_type]) + b"\x00" * 4 + data


def epoch_ms(dt: datetime) -> int:
    return calendar.timegm(dt.timetuple()) * 1000


def recording_header(
    start: datetime, interval_ms: int = 1000, first_counter: int = 5000
) -> bytes:
    """128-byte recording header (the payload after the type byte)."""
    header = bytearray(128)
    struct.pack_into("<I", header, 0, first_counter)
    struct.pack_into(
        "<HBBBBB",
        header,
        4,
        start.year,
        start.month,
        start.day,
        start.hour,
        start.minute,
        start.second,
    )
    struct.pack_into("<I", header, 64, (first_counter + interval_ms) & 0xFFFFFFFF)
    return bytes(header)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fast_timing() -> SessionTiming:
    """Timing with short real delays; watchdog thresholds use the manual clock."""
    return SessionTiming(
        scan_window=0.2,
        connect_settle=0.02,
        message_settle=0.02,
        skip_delay=0.1,
        watchdog_poll=0.01,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def events() -> Recorder:
    return Recorder()


@pytest.fixture
def inhibitor() -> SleepInhibitor:
    return SleepInhibitor(system="test")


@pytest.fixture
def session(transport, events, fast_timing, clock, inhibitor) -> PodSession:
    return PodSession(
        transport,
        timing=fast_timing,
        sleep_inhibitor=inhibitor,
        clock=clock,
        **events.session_kwargs(),
    )
