"""Reassembly of fragmented Pod messages.

The Pod sends every logical message as a run of notification-sized
fragments. Only the first fragment carries the expected fragment count::

    first fragment : [type][4 bytes][count, LE uint32][payload ...]
    next fragments : [type][4 bytes][payload ...]

The reassembled payload starts with the message type byte followed by
the concatenated fragment payloads.

The reassembler is a plain state machine. It does not schedule anything
itself: :meth:`PacketReassembler.feed` reports when the expected count is
reached and the caller decides when to call :meth:`PacketReassembler.finish`.
All state changes happen under one lock so that hand-off to the host and a
watchdog-forced finish can never both deliver the same message.
"""

from __future__ import annotations

import logging
import struct
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .protocol import COUNT_OFFSET, FIRST_FRAGMENT_HEADER_SIZE, FRAGMENT_HEADER_SIZE

logger = logging.getLogger(__name__)

# Headers announcing more fragments than this are treated as corrupt
MAX_EXPECTED_FRAGMENTS = 500_000

MIN_SIZE_ESTIMATE = 64
SIZE_ESTIMATE_SLACK = 2048

_COUNT = struct.Struct("<I")


class ReassemblerState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class Message:
    """A finished message handed off to the host.

    Attributes:
        seq: Sequence id of the message within the reassembler's lifetime.
        message_type: Type tag from the first fragment.
        expected: Fragment count announced by the first fragment.
        received: Fragments actually received.
        payload: Type byte followed by the reassembled payload.
    """

    seq: int
    message_type: int
    expected: int
    received: int
    payload: bytes

    @property
    def complete(self) -> bool:
        """True if every announced fragment arrived."""
        return self.received >= self.expected


@dataclass(frozen=True)
class FeedResult:
    """Outcome of feeding one fragment.

    Attributes:
        accepted: The fragment was used (appended, started a message or
            passed through).
        started: The fragment opened a new message.
        passthrough: Raw fragment to deliver immediately as a standalone
            payload, when no multi-fragment message is being assembled.
        completed_seq: Set once per message, on the fragment that makes
            the received count reach the expected count.
    """

    accepted: bool = False
    started: bool = False
    passthrough: Optional[bytes] = None
    completed_seq: Optional[int] = None


_DISCARDED = FeedResult()


def estimate_message_size(expected: int, fragment_size: int) -> int:
    """Rough size of a message's payload.

    Only reported in the message-start log line. The payload is a growing
    ``bytearray``, so nothing is preallocated from this value.
    """
    safe_size = max(fragment_size, MIN_SIZE_ESTIMATE)
    return expected * (safe_size - FRAGMENT_HEADER_SIZE) + SIZE_ESTIMATE_SLACK


class PacketReassembler:
    """State machine that turns notification fragments into messages."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ReassemblerState.IDLE
        self._payload = bytearray()
        self._message_type = 0
        self._expected = 0
        self._received = 0
        self._fragment_size = 0
        self._seq = 0
        self._completion_reported = False

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ReassemblerState:
        """Current state of the machine."""
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        """True while a multi-fragment message is being assembled."""
        with self._lock:
            return self._state is ReassemblerState.ACCUMULATING

    @property
    def seq(self) -> int:
        """Sequence id of the most recently started message."""
        with self._lock:
            return self._seq

    @property
    def message_type(self) -> int:
        """Type tag of the open message, 0 when idle."""
        with self._lock:
            return self._message_type

    @property
    def fragment_size(self) -> int:
        """Notification size inferred from the first fragment since the last reset."""
        with self._lock:
            return self._fragment_size

    @property
    def payload_size(self) -> int:
        """Bytes accumulated for the open message, type byte included."""
        with self._lock:
            return len(self._payload)

    def progress(self) -> tuple[int, int]:
        """Return ``(received, expected)`` for the open message, or ``(0, 0)``."""
        with self._lock:
            if self._state is not ReassemblerState.ACCUMULATING:
                return 0, 0
            return self._received, self._expected

    def peek(self, size: int) -> bytes:
        """Copy the first ``size`` bytes of the payload accumulated so far."""
        with self._lock:
            return bytes(self._payload[:size])

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def feed(self, fragment: bytes) -> FeedResult:
        """Consume one fragment and report what happened."""
        with self._lock:
            if self._state is ReassemblerState.PASSTHROUGH:
                if not fragment:
                    return _DISCARDED
                return FeedResult(accepted=True, passthrough=bytes(fragment))

            if len(fragment) < FRAGMENT_HEADER_SIZE:
                logger.debug("Discarding short fragment: %d bytes", len(fragment))
                return _DISCARDED

            if self._fragment_size == 0:
                self._fragment_size = len(fragment)

            if self._state is ReassemblerState.IDLE:
                return self._start_message(fragment)
            return self._append_fragment(fragment)

    def _start_message(self, fragment: bytes) -> FeedResult:
        if len(fragment) < FIRST_FRAGMENT_HEADER_SIZE:
            logger.debug("Discarding short first fragment: %d bytes", len(fragment))
            return _DISCARDED

        (expected,) = _COUNT.unpack_from(fragment, COUNT_OFFSET)
        if expected == 0:
            logger.debug("Zero-count header: passing fragments through")
            self._state = ReassemblerState.PASSTHROUGH
            return FeedResult(accepted=True, passthrough=bytes(fragment))
        if expected > MAX_EXPECTED_FRAGMENTS:
            logger.warning("Discarding header with implausible count %d", expected)
            return _DISCARDED

        self._seq += 1
        self._state = ReassemblerState.ACCUMULATING
        self._message_type = fragment[0]
        self._expected = expected
        self._received = 1
        self._completion_reported = False
        self._payload = bytearray()
        self._payload.append(self._message_type)
        self._payload.extend(fragment[FIRST_FRAGMENT_HEADER_SIZE:])

        logger.info(
            "Message %d started: type=0x%02x expected=%d (~%d bytes)",
            self._seq,
            self._message_type,
            expected,
            estimate_message_size(expected, self._fragment_size),
        )
        return FeedResult(
            accepted=True, started=True, completed_seq=self._check_complete()
        )

    def _append_fragment(self, fragment: bytes) -> FeedResult:
        # Exactly-5-byte continuation frames only advance the count
        self._payload.extend(fragment[FRAGMENT_HEADER_SIZE:])
        if self._received < self._expected:
            self._received += 1
        else:
            logger.debug("Straggling fragment after completion: %d bytes", len(fragment))
        return FeedResult(accepted=True, completed_seq=self._check_complete())

    def _check_complete(self) -> Optional[int]:
        if self._completion_reported or self._received < self._expected:
            return None
        self._completion_reported = True
        return self._seq

    def finish(self, seq: Optional[int] = None) -> Optional[Message]:
        """Hand off the open message, complete or not, and return to idle.

        Args:
            seq: Sequence id the caller expects to finish. If another
                message has been opened since, or the message has already
                been handed off, nothing happens.

        Returns:
            The finished message, or ``None`` if there was nothing to finish.
        """
        with self._lock:
            if self._state is not ReassemblerState.ACCUMULATING:
                return None
            if seq is not None and seq != self._seq:
                return None

            message = Message(
                seq=self._seq,
                message_type=self._message_type,
                expected=self._expected,
                received=self._received,
                payload=bytes(self._payload),
            )
            self._clear_message()
            return message

    def reset(self) -> None:
        """Drop any open message and forget the inferred fragment size."""
        with self._lock:
            self._clear_message()
            self._fragment_size = 0

    def _clear_message(self) -> None:
        self._state = ReassemblerState.IDLE
        self._payload = bytearray()
        self._message_type = 0
        self._expected = 0
        self._received = 0
        self._completion_reported = False
