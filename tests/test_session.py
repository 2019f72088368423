"""Tests for the Pod session controller, driven through a fake transport."""

import asyncio
from datetime import datetime, timedelta

import pytest
from conftest import (
    DEVICE_ADDRESS,
    DEVICE_RAW_ADDRESS,
    epoch_ms,
    first_fragment,
    next_fragment,
    recording_header,
)

from pod_connector.advertisement import ScanResult
from pod_connector.protocol import RESET_COMMAND, SKIP_MARKER, build_download_command
from pod_connector.session import (
    STATUS_BLUETOOTH_UNAVAILABLE,
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_CONNECTION_ERROR,
    STATUS_DEVICE_NOT_FOUND,
    STATUS_DISCONNECTED,
    STATUS_SCANNING,
    STATUS_SERVICE_NOT_FOUND,
    PodSession,
    overall_percent,
)

RECORDING_START = datetime(2025, 1, 1, 0, 0, 0)


async def connected(session, transport, timing):
    """Connect and wait until the post-connect reset has been written."""
    await session.connect(DEVICE_ADDRESS)
    await asyncio.sleep(timing.connect_settle * 2)
    await session.flush_writes()
    transport.writes.clear()
    return session


async def settle(session, timing):
    await session.drain_fragments()
    await asyncio.sleep(timing.message_settle * 3)


def recording_fragments(count=1000, fragment_size=100):
    """First two fragments of a type 0x03 recording, enough for smart peek."""
    header = recording_header(RECORDING_START) + b"\x00" * 200
    first_len = fragment_size - 9
    next_len = fragment_size - 5
    return [
        first_fragment(0x03, count, header[:first_len]),
        next_fragment(0x03, header[first_len : first_len + next_len]),
    ]


class TestScanning:
    @pytest.mark.asyncio
    async def test_scan_reports_pods_only(self, session, transport, events):
        await session.start_scan()
        assert events.statuses == [STATUS_SCANNING]
        assert transport.scanning

        transport.advertise("POD-42", DEVICE_RAW_ADDRESS, -50)
        transport.advertise("MyPOD", DEVICE_RAW_ADDRESS + 1, -40)
        transport.advertise(None, DEVICE_RAW_ADDRESS + 2, -40)

        assert events.scan_results == [ScanResult("POD-42", DEVICE_ADDRESS, -50)]
        await session.close()

    @pytest.mark.asyncio
    async def test_scan_stops_after_window(self, session, transport, fast_timing):
        await session.start_scan()
        await asyncio.sleep(fast_timing.scan_window + 0.1)
        assert not transport.scanning
        assert not session.is_scanning

    @pytest.mark.asyncio
    async def test_manual_stop(self, session, transport):
        await session.start_scan()
        await session.stop_scan()
        assert not transport.scanning

    @pytest.mark.asyncio
    async def test_scan_failure_reports_bluetooth_unavailable(self, session, transport, events):
        transport.scan_error = OSError("adapter off")
        await session.start_scan()
        assert events.statuses == [STATUS_BLUETOOTH_UNAVAILABLE]
        assert not session.is_scanning


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_sends_reset_after_settle(
        self, session, transport, events, fast_timing, inhibitor
    ):
        await session.connect(DEVICE_ADDRESS)
        assert events.statuses == [STATUS_CONNECTING, STATUS_CONNECTED]
        assert transport.connected_to == [DEVICE_RAW_ADDRESS]
        assert session.is_connected
        assert inhibitor.active
        assert transport.writes == []

        await asyncio.sleep(fast_timing.connect_settle * 2)
        await session.flush_writes()
        assert transport.writes == [RESET_COMMAND]
        await session.close()

    @pytest.mark.asyncio
    async def test_connect_stops_scan(self, session, transport):
        await session.start_scan()
        await session.connect(DEVICE_ADDRESS)
        assert not transport.scanning
        await session.close()

    @pytest.mark.asyncio
    async def test_malformed_address(self, session, transport, events):
        await session.connect("not-an-address")
        assert events.statuses == [STATUS_CONNECTING, STATUS_DEVICE_NOT_FOUND]
        assert transport.connected_to == []

    @pytest.mark.asyncio
    async def test_device_not_found(self, session, transport, events):
        transport.device_present = False
        await session.connect(DEVICE_ADDRESS)
        assert events.statuses[-1] == STATUS_DEVICE_NOT_FOUND
        assert not session.is_connected

    @pytest.mark.asyncio
    async def test_service_not_found(self, session, transport, events):
        transport.service_present = False
        await session.connect(DEVICE_ADDRESS)
        assert events.statuses[-1] == STATUS_SERVICE_NOT_FOUND
        assert transport.disconnect_calls == 1
        assert not session.is_connected

    @pytest.mark.asyncio
    async def test_transport_error(self, session, transport, events, inhibitor):
        transport.connect_error = OSError("link failed")
        await session.connect(DEVICE_ADDRESS)
        assert events.statuses[-1] == STATUS_CONNECTION_ERROR
        assert not inhibitor.active

    @pytest.mark.asyncio
    async def test_failing_status_callback_does_not_break_session(
        self, transport, fast_timing, inhibitor
    ):
        def explode(_):
            raise RuntimeError("host bug")

        session = PodSession(
            transport, timing=fast_timing, on_status=explode, sleep_inhibitor=inhibitor
        )
        await session.connect(DEVICE_ADDRESS)
        assert session.is_connected
        await session.close()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_releases_everything(
        self, session, transport, events, fast_timing, inhibitor
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        await session.disconnect()

        assert events.statuses[-1] == STATUS_DISCONNECTED
        assert transport.disconnect_calls == 1
        assert not inhibitor.active
        assert not session.watchdog.running
        assert session.request is None

    @pytest.mark.asyncio
    async def test_link_loss_disconnects(self, session, transport, events, fast_timing):
        await connected(session, transport, fast_timing)
        transport.drop_link()
        await asyncio.sleep(0.05)
        assert events.statuses[-1] == STATUS_DISCONNECTED
        assert not session.is_connected

    @pytest.mark.asyncio
    async def test_commands_while_disconnected_are_dropped(self, session, transport):
        session.write_command(RESET_COMMAND)
        await session.flush_writes()
        assert transport.writes == []


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_sends_request_and_starts_watchdog(
        self, session, transport, fast_timing
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log (copy)  ")
        await session.flush_writes()

        assert transport.writes == [build_download_command("Log")]
        assert session.watchdog.running
        await session.close()

    @pytest.mark.asyncio
    async def test_message_is_delivered_once(self, session, transport, events, fast_timing):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        f1 = first_fragment(0x05, 3, b"abc")
        f2 = next_fragment(0x05, b"def")
        f3 = next_fragment(0x05, b"ghi")

        transport.notify(f1, f2, f3)
        await settle(session, fast_timing)

        assert events.payloads == [bytes([0x05]) + f1[9:] + f2[5:] + f3[5:]]
        assert not session.watchdog.running
        await session.close()

    @pytest.mark.asyncio
    async def test_straggler_within_settle_is_included(
        self, session, transport, events, fast_timing
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        transport.notify(
            first_fragment(0x05, 2, b"a"), next_fragment(0x05, b"b"), next_fragment(0x05, b"c")
        )
        await settle(session, fast_timing)
        assert events.payloads == [b"\x05abc"]
        await session.close()

    @pytest.mark.asyncio
    async def test_watchdog_timeout_delivers_partial_data(
        self, session, transport, events, fast_timing, clock
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        transport.notify(first_fragment(0x03, 100, b"partial"))
        await session.drain_fragments()

        clock.advance(61)
        await asyncio.sleep(0.1)

        assert events.payloads == [b"\x03partial"]
        assert not session.watchdog.running
        await session.close()

    @pytest.mark.asyncio
    async def test_watchdog_finishes_stalled_transfer(
        self, session, transport, events, fast_timing, clock
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        transport.notify(first_fragment(0x05, 100, b"a"))
        transport.notify(*[next_fragment(0x05, b"b") for _ in range(98)])
        await session.drain_fragments()
        assert session.reassembler.progress() == (99, 100)

        clock.advance(3)
        await asyncio.sleep(0.1)

        assert events.payloads == [b"\x05a" + b"b" * 98]
        await session.close()

    @pytest.mark.asyncio
    async def test_passthrough_payloads(self, session, transport, events, fast_timing):
        await connected(session, transport, fast_timing)
        await session.download_file("dir")
        header = first_fragment(0x07, 0, b"listing")
        transport.notify(header, b"\x01raw")
        await session.drain_fragments()

        assert events.payloads == [header, b"\x01raw"]
        await session.close()

    @pytest.mark.asyncio
    async def test_progress_events(self, session, transport, events, fast_timing):
        await connected(session, transport, fast_timing)
        await session.download_file("b", total_files=2, current_index=2)
        transport.notify(first_fragment(0x05, 4, b"1"))
        transport.notify(*[next_fragment(0x05, b"x") for _ in range(3)])
        await settle(session, fast_timing)

        first, last = events.progress[0], events.progress[-1]
        assert (first.file_percent, first.overall_percent) == (25, 62)
        assert (last.received, last.expected) == (4, 4)
        assert (last.file_percent, last.overall_percent) == (100, 100)
        assert len({p.overall_percent for p in events.progress}) == len(events.progress)
        await session.close()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_emits_one_skip_marker_after_delay(
        self, session, transport, events, fast_timing
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        transport.notify(first_fragment(0x03, 100, b"a"))
        await session.drain_fragments()

        loop = asyncio.get_running_loop()
        cancelled_at = loop.time()
        await session.cancel_download()
        await session.flush_writes()
        assert transport.writes[-1] == RESET_COMMAND
        assert events.payloads == []

        while not events.payloads:
            await asyncio.sleep(0.01)
        # call_later may fire up to one clock tick early
        assert loop.time() - cancelled_at >= fast_timing.skip_delay - 0.01
        await asyncio.sleep(fast_timing.skip_delay)
        assert events.payloads == [SKIP_MARKER]
        assert not session.watchdog.running
        assert session.reassembler.progress() == (0, 0)
        await session.close()

    @pytest.mark.asyncio
    async def test_smart_peek_cancels_recording_before_window(
        self, session, transport, events, fast_timing
    ):
        await connected(session, transport, fast_timing)
        filter_start = epoch_ms(RECORDING_START + timedelta(days=1))
        await session.download_file("rec", filter_start=filter_start)
        transport.notify(*recording_fragments())
        await session.drain_fragments()
        await asyncio.sleep(fast_timing.skip_delay * 2)
        await session.flush_writes()

        assert events.payloads == [SKIP_MARKER]
        assert transport.writes.count(RESET_COMMAND) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_smart_peek_keeps_overlapping_recording(
        self, session, transport, events, fast_timing
    ):
        await connected(session, transport, fast_timing)
        start = epoch_ms(RECORDING_START)
        await session.download_file(
            "rec", filter_start=start + 10 * 60_000, filter_end=start + 60 * 60_000
        )
        transport.notify(*recording_fragments())
        await session.drain_fragments()
        await asyncio.sleep(fast_timing.skip_delay * 2)
        await session.flush_writes()

        assert events.payloads == []
        assert RESET_COMMAND not in transport.writes
        assert session.reassembler.is_open
        await session.close()

    @pytest.mark.asyncio
    async def test_unfiltered_download_is_never_peeked(
        self, session, transport, events, fast_timing
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("rec")
        transport.notify(*recording_fragments())
        await session.drain_fragments()
        assert session.reassembler.is_open
        await session.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_cancels_pending_reset(self, session, transport, fast_timing):
        await session.connect(DEVICE_ADDRESS)
        await session.close()
        await asyncio.sleep(fast_timing.connect_settle * 3)
        assert transport.writes == []
        assert session.closed

    @pytest.mark.asyncio
    async def test_close_cancels_pending_skip_marker(
        self, session, transport, events, fast_timing
    ):
        await connected(session, transport, fast_timing)
        await session.download_file("Log")
        await session.cancel_download()
        await session.close()
        await asyncio.sleep(fast_timing.skip_delay * 2)
        assert SKIP_MARKER not in events.payloads

    @pytest.mark.asyncio
    async def test_close_cancels_scan_timer(self, session, transport, fast_timing):
        await session.start_scan()
        await session.close()
        assert not transport.scanning
        await asyncio.sleep(fast_timing.scan_window + 0.1)

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, transport, fast_timing, inhibitor):
        async with PodSession(transport, timing=fast_timing, sleep_inhibitor=inhibitor) as s:
            await s.connect(DEVICE_ADDRESS)
        assert s.closed
        assert transport.disconnect_calls == 1


class TestOverallPercent:
    @pytest.mark.parametrize(
        "index, total, file_percent, expected",
        [(1, 1, 50, 50), (2, 4, 0, 25), (3, 3, 100, 100), (5, 3, 100, 100), (1, 0, 30, 30)],
    )
    def test_combines_files(self, index, total, file_percent, expected):
        assert overall_percent(index, total, file_percent) == expected
