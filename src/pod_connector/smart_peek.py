"""Early-abort heuristic for filtered recording downloads.

Recording files start with a header that carries the wall-clock start
time and the first sample counters. Once the first 128 payload bytes of a
recording have arrived, the start time and an estimate of the file's
duration are enough to tell whether the file can intersect the host's
time filter at all. Files that cannot are cancelled instead of being
transferred in full.

Failing to cancel an unwanted file only costs bandwidth; cancelling a
wanted file loses data. The intersection test below therefore keeps the
exact bounds and integer rounding of the device protocol.
"""

from __future__ import annotations

import calendar
import logging
import struct
from typing import Optional

from .protocol import FRAGMENT_HEADER_SIZE, RECORDING_TAG

logger = logging.getLogger(__name__)

PEEK_SIZE = 129  # type byte + 128 header bytes

# Offsets into the reassembled payload (offset 0 is the message type byte)
DATE_OFFSET = 5
FIRST_COUNTER_OFFSET = 1
SECOND_COUNTER_OFFSET = 65

STANDARD_INTERVALS_MS = (100, 200, 300, 400, 500, 600, 700, 800, 900, 1000)
MIN_PAYLOAD_PER_FRAGMENT = 59
SAMPLE_RECORD_SIZE = 64

_DATE = struct.Struct("<HBBBBB")
_COUNTER = struct.Struct("<I")
COUNTER_MASK = 0xFFFFFFFF


def snap_to_standard_interval(raw_ms: int) -> int:
    """Round a measured sample interval to the nearest nominal interval."""
    closest = 1000
    min_diff: Optional[int] = None
    for target in STANDARD_INTERVALS_MS:
        diff = abs(raw_ms - target)
        if min_diff is None or diff < min_diff:
            min_diff = diff
            closest = target
    return closest


def parse_start_time_ms(payload: bytes) -> int:
    """Read the recording start time from the header as epoch ms (UTC).

    Raises:
        ValueError: If the header date fields do not form a valid date.
    """
    year, month, day, hour, minute, second = _DATE.unpack_from(payload, DATE_OFFSET)
    if not 1 <= month <= 12 or not 1 <= day <= 31:
        raise ValueError(f"Invalid header date {year}-{month}-{day}")
    seconds = calendar.timegm((year, month, day, hour, minute, second, 0, 0, 0))
    return seconds * 1000


def estimate_duration_ms(payload: bytes, expected: int, fragment_size: int) -> int:
    """Estimate the recording's duration from its sample interval and size."""
    (t1,) = _COUNTER.unpack_from(payload, FIRST_COUNTER_OFFSET)
    (t2,) = _COUNTER.unpack_from(payload, SECOND_COUNTER_OFFSET)
    # Counters are uint32 ms and wrap after ~49.7 days of uptime
    interval = snap_to_standard_interval((t2 - t1) & COUNTER_MASK)
    per_fragment = max(fragment_size - FRAGMENT_HEADER_SIZE, MIN_PAYLOAD_PER_FRAGMENT)
    return (expected * per_fragment // SAMPLE_RECORD_SIZE) * interval


def outside_window(start_ms: int, duration_ms: int, filter_start: int, filter_end: int) -> bool:
    """Return True if ``[start, start + duration]`` misses the filter window.

    A zero bound is treated as unset and never compared.
    """
    if filter_end > 0 and start_ms > filter_end:
        return True
    if filter_start > 0 and start_ms + duration_ms < filter_start:
        return True
    return False


class SmartPeek:
    """Per-download smart peek state.

    One instance is created for every download command; it fires at most
    once per message.
    """

    def __init__(self, filter_start: int = 0, filter_end: int = 0) -> None:
        self.filter_start = filter_start
        self.filter_end = filter_end
        self.done = False

    @property
    def is_filtering(self) -> bool:
        """True if either filter bound is set."""
        return self.filter_start > 0 or self.filter_end > 0

    def rearm(self) -> None:
        """Allow one more evaluation, for the next message."""
        self.done = False

    def is_due(self, message_type: int, payload_len: int) -> bool:
        """Return True if the accumulated payload should be evaluated now.

        Args:
            message_type: Type tag of the open message.
            payload_len: Bytes accumulated so far, type byte included.
        """
        return (
            self.is_filtering
            and message_type == RECORDING_TAG
            and not self.done
            and payload_len >= PEEK_SIZE
        )

    def evaluate(self, payload: bytes, expected: int, fragment_size: int) -> bool:
        """Inspect the message header; return True if the download should stop."""
        self.done = True
        if len(payload) < PEEK_SIZE:
            return False

        try:
            start_ms = parse_start_time_ms(payload)
        except (ValueError, OverflowError) as e:
            logger.warning("Smart peek skipped: %s", e)
            return False

        duration_ms = estimate_duration_ms(payload, expected, fragment_size)
        cancel = outside_window(start_ms, duration_ms, self.filter_start, self.filter_end)
        logger.debug(
            "Smart peek: start=%d duration=%d filter=[%d, %d] cancel=%s",
            start_ms,
            duration_ms,
            self.filter_start,
            self.filter_end,
            cancel,
        )
        return cancel
