"""Pod session controller.

This module ties the protocol pieces together into one session with a
Pod device:

- **Discovery**: scanning with a fixed window, filtered to Pod advertisements
- **Connection**: GATT setup, notification subscription, buffer reset
- **Download**: command framing, fragment reassembly, completion hand-off
- **Smart peek**: early cancellation of recordings outside the host's filter
- **Watchdog**: forced completion of stalled transfers

Everything the host needs to know is reported through four callbacks
(status strings, scan results, payloads and download progress) rather
than return values or exceptions. Public coroutines never raise for
transport failures; they report a terminal status instead.

Concurrency model:
- Notifications may arrive on any thread. They only touch the activity
  clock and enqueue the fragment on the session's event loop.
- A single consumer task feeds the reassembler, so fragments are processed
  strictly in order, one at a time.
- The watchdog is its own task. Payload hand-off is keyed by message
  sequence id, so a forced finish and a normal completion of the same
  message cannot both deliver.
- Delayed actions (scan auto-stop, completion settle, skip marker) are
  timer handles owned by the session and cancelled by :meth:`PodSession.close`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from .address import InvalidAddressFormat, parse_address
from .advertisement import ScanResult, filter_advertisement
from .config import DEFAULT_TIMING, SessionTiming
from .power import SleepInhibitor
from .protocol import RESET_COMMAND, SKIP_MARKER, DownloadRequest
from .reassembler import PacketReassembler
from .smart_peek import PEEK_SIZE, SmartPeek
from .transport import GattEndpoints, Transport
from .watchdog import ActivityClock, LivenessWatchdog

logger = logging.getLogger(__name__)

STATUS_SCANNING = "Scanning..."
STATUS_CONNECTING = "Connecting..."
STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_DEVICE_NOT_FOUND = "Device Not Found"
STATUS_SERVICE_NOT_FOUND = "Service Not Found"
STATUS_CONNECTION_ERROR = "Connection Error"
STATUS_BLUETOOTH_UNAVAILABLE = "Bluetooth Unavailable"


@dataclass(frozen=True)
class DownloadProgress:
    """Progress of the current file within a batch of downloads.

    Attributes:
        current_index: 1-based index of the file being downloaded.
        total_files: Number of files in the batch.
        received: Fragments received for the current file.
        expected: Fragments announced for the current file.
        file_percent: Completion of the current file, 0-100.
        overall_percent: Completion of the whole batch, 0-100.
    """

    current_index: int
    total_files: int
    received: int
    expected: int
    file_percent: int
    overall_percent: int


def overall_percent(current_index: int, total_files: int, file_percent: int) -> int:
    """Combine per-file progress into batch progress, clamped to 0..100."""
    total = max(total_files, 1)
    value = ((current_index - 1) * 100 + file_percent) // total
    return min(max(value, 0), 100)


StatusCallback = Callable[[str], None]
ScanCallback = Callable[[ScanResult], None]
PayloadCallback = Callable[[bytes], None]
ProgressCallback = Callable[[DownloadProgress], None]


class PodSession:
    """Session and protocol engine for one Pod connection.

    Args:
        transport: BLE transport to drive.
        timing: Delays and watchdog thresholds.
        on_status: Receives session status strings.
        on_scan_result: Receives discovered Pods.
        on_payload: Receives one ``bytes`` object per finished message,
            per passthrough fragment, and ``SKIP_MARKER`` after a cancel.
        on_progress: Receives download progress updates.
        sleep_inhibitor: Keeps the host awake while connected.
        clock: Monotonic clock in seconds, for the watchdog.

    Example:
        >>> async with PodSession(BleakTransport(), on_payload=save) as session:
        ...     await session.connect("c4:7f:51:0a:00:1e")
        ...     await session.download_file("20250725.bin")
    """

    def __init__(
        self,
        transport: Transport,
        *,
        timing: SessionTiming = DEFAULT_TIMING,
        on_status: Optional[StatusCallback] = None,
        on_scan_result: Optional[ScanCallback] = None,
        on_payload: Optional[PayloadCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        sleep_inhibitor: Optional[SleepInhibitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._timing = timing
        self._on_status = on_status
        self._on_scan_result = on_scan_result
        self._on_payload = on_payload
        self._on_progress = on_progress
        self._power = sleep_inhibitor if sleep_inhibitor is not None else SleepInhibitor()

        self._reassembler = PacketReassembler()
        self._activity = ActivityClock(clock)
        self._watchdog = LivenessWatchdog(
            self._activity, self._reassembler.progress, self._on_watchdog_force, timing
        )
        self._peek = SmartPeek()
        self._request: Optional[DownloadRequest] = None

        # Connection resources, owned by the transport
        self._device: Optional[Any] = None
        self._endpoints: Optional[GattEndpoints] = None
        self._disconnecting = False

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._fragments: Optional[asyncio.Queue[bytes]] = None
        self._consumer: Optional[asyncio.Task[None]] = None

        self._write_lock = asyncio.Lock()
        self._writes: set[asyncio.Task[None]] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self._scan_timer: Optional[asyncio.TimerHandle] = None
        self._scanning = False
        self._closed = False

        self._last_percent = -1
        self._last_progress_at = 0.0

    async def __aenter__(self) -> "PodSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """True while a device handle is held."""
        return self._device is not None

    @property
    def is_scanning(self) -> bool:
        """True while discovery is running."""
        return self._scanning

    @property
    def closed(self) -> bool:
        """True once :meth:`close` has completed."""
        return self._closed

    @property
    def request(self) -> Optional[DownloadRequest]:
        """The current download request, if any."""
        return self._request

    @property
    def reassembler(self) -> PacketReassembler:
        """Reassembler fed by the fragment channel."""
        return self._reassembler

    @property
    def watchdog(self) -> LivenessWatchdog:
        """Watchdog guarding the current download."""
        return self._watchdog

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def start_scan(self) -> None:
        """Start discovering Pods; the scan stops by itself after the scan window."""
        if self._closed:
            return
        self._loop = asyncio.get_running_loop()
        self._cancel_scan_timer()

        try:
            await self._transport.start_scan(self._on_advertisement)
        except Exception as e:
            logger.error("BLE scan could not be started: %s: %s", type(e).__name__, e)
            self._emit_status(STATUS_BLUETOOTH_UNAVAILABLE)
            return

        self._scanning = True
        self._emit_status(STATUS_SCANNING)
        self._scan_timer = self._call_later(
            self._timing.scan_window, self._spawn, self.stop_scan
        )

    async def stop_scan(self) -> None:
        """Stop discovery. Safe to call when no scan is running."""
        self._cancel_scan_timer()
        if not self._scanning:
            return
        self._scanning = False
        try:
            await self._transport.stop_scan()
        except Exception as e:
            logger.warning("BLE scan stop failed: %s", e)

    def _cancel_scan_timer(self) -> None:
        timer, self._scan_timer = self._scan_timer, None
        if timer is not None:
            timer.cancel()
            self._timers.discard(timer)

    def _on_advertisement(self, name: Optional[str], raw_address: int, rssi: int) -> None:
        result = filter_advertisement(name, raw_address, rssi)
        if result is not None:
            self._emit(self._on_scan_result, result)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self, address_text: str) -> None:
        """Connect to the Pod at ``address_text`` and prepare it for commands.

        The outcome is reported through the status callback: ``"Connected"``
        on success, otherwise one of the terminal failure statuses. There is
        no automatic retry.
        """
        if self._closed:
            return
        self._loop = asyncio.get_running_loop()
        await self.stop_scan()
        if self._device is not None:
            await self._teardown_connection()

        self._emit_status(STATUS_CONNECTING)

        try:
            address = parse_address(address_text)
        except InvalidAddressFormat as e:
            logger.warning("Rejected device address: %s", e)
            self._emit_status(STATUS_DEVICE_NOT_FOUND)
            return

        try:
            device = await self._transport.connect(address, on_disconnect=self._on_link_lost)
            if device is None:
                self._emit_status(STATUS_DEVICE_NOT_FOUND)
                return
            self._device = device

            endpoints = await self._transport.discover(device)
            if endpoints is None:
                await self._teardown_connection()
                self._emit_status(STATUS_SERVICE_NOT_FOUND)
                return
            self._endpoints = endpoints

            self._start_fragment_channel()
            await self._transport.subscribe(device, endpoints, self._on_fragment)
        except Exception as e:
            logger.error("Connection failed: %s: %s", type(e).__name__, e)
            await self._teardown_connection()
            self._emit_status(STATUS_CONNECTION_ERROR)
            return

        self._power.acquire()
        self._emit_status(STATUS_CONNECTED)

        # Clear leftover buffers on the Pod once notifications are live
        self._call_later(self._timing.connect_settle, self.write_command, RESET_COMMAND)

    async def disconnect(self) -> None:
        """Tear down the connection and reset all download state."""
        await self._teardown_connection()
        self._emit_status(STATUS_DISCONNECTED)

    async def _teardown_connection(self) -> None:
        self._disconnecting = True
        try:
            await self._watchdog.stop()
            self._power.release()
            await self._stop_fragment_channel()

            device, self._device = self._device, None
            self._endpoints = None
            if device is not None:
                try:
                    await self._transport.disconnect(device)
                except Exception as e:
                    logger.warning("Transport disconnect failed: %s", e)

            self._reset_download_state()
            self._request = None
        finally:
            self._disconnecting = False

    def _on_link_lost(self) -> None:
        """Transport callback for an unsolicited disconnect, from any thread."""
        loop = self._loop
        if loop is None or self._closed or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_link_lost)

    def _handle_link_lost(self) -> None:
        if self._device is None or self._disconnecting or self._closed:
            return
        logger.warning("Pod link lost, cleaning up session")
        self._spawn(self.disconnect)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def write_command(self, data: bytes) -> None:
        """Send a raw command to the Pod without waiting for the result.

        Writes are performed in issue order. Failures are logged and
        otherwise ignored; most commands are idempotent resets.
        """
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._send(bytes(data)))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def flush_writes(self) -> None:
        """Wait until every command issued so far has been written or dropped."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def _send(self, data: bytes) -> None:
        async with self._write_lock:
            device, endpoints = self._device, self._endpoints
            if device is None or endpoints is None:
                logger.debug("Command %s dropped: not connected", data[:2].hex())
                return
            try:
                ok = await self._transport.write(device, endpoints, data)
            except Exception as e:
                logger.debug("Command write raised %s: %s", type(e).__name__, e)
                ok = False
            if not ok:
                logger.debug("Command %s not acknowledged (ignored)", data[:2].hex())

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download_file(
        self,
        filename: str,
        filter_start: int = 0,
        filter_end: int = 0,
        total_files: int = 1,
        current_index: int = 1,
    ) -> None:
        """Request ``filename`` from the Pod.

        Args:
            filename: File name as listed by the Pod. A parenthetical
                suffix and trailing spaces are stripped before sending.
            filter_start: Epoch ms lower bound of the host's time filter, 0 if unset.
            filter_end: Epoch ms upper bound of the host's time filter, 0 if unset.
            total_files: Number of files in the current batch.
            current_index: 1-based index of this file in the batch.
        """
        if self._closed:
            return
        request = DownloadRequest(
            filename=filename,
            filter_start=filter_start,
            filter_end=filter_end,
            total_files=total_files,
            current_index=current_index,
        )

        await self._watchdog.stop()
        self._reset_download_state()
        self._request = request
        self._peek = SmartPeek(request.filter_start, request.filter_end)

        if self._device is None:
            logger.warning("Download of '%s' requested while disconnected", request.clean_name)
        logger.info(
            "Downloading '%s' (%d/%d) filter=[%d, %d]",
            request.clean_name,
            request.current_index,
            request.total_files,
            request.filter_start,
            request.filter_end,
        )

        self.write_command(request.to_command())
        self._activity.touch()
        self._watchdog.start()

    async def cancel_download(self) -> None:
        """Abort the current download and tell the host to move on.

        The skip marker is emitted after a delay so that the Pod has
        stopped transmitting before the host requests the next file.
        """
        if self._closed:
            return
        await self._watchdog.stop()
        self.write_command(RESET_COMMAND)
        self._reset_download_state()
        logger.info("Download cancelled; skip marker in %.2fs", self._timing.skip_delay)
        self._call_later(self._timing.skip_delay, self._emit_payload, SKIP_MARKER)

    def _reset_download_state(self) -> None:
        self._reassembler.reset()
        self._peek.rearm()
        self._last_percent = -1
        self._last_progress_at = 0.0

        queue = self._fragments
        if queue is not None:
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()

    # ------------------------------------------------------------------
    # Fragment channel
    # ------------------------------------------------------------------

    def _start_fragment_channel(self) -> None:
        self._fragments = asyncio.Queue()
        self._consumer = asyncio.get_running_loop().create_task(
            self._consume_fragments(self._fragments), name="pod-fragments"
        )

    async def _stop_fragment_channel(self) -> None:
        consumer, self._consumer = self._consumer, None
        self._fragments = None
        if consumer is None or consumer is asyncio.current_task():
            return
        consumer.cancel()
        try:
            await consumer
        except asyncio.CancelledError:
            pass

    def _on_fragment(self, data: bytes) -> None:
        """Transport notification callback, possibly off the event loop thread."""
        queue, loop = self._fragments, self._loop
        if not data or queue is None or loop is None:
            return
        self._activity.touch()

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(data)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(queue.put_nowait, data)

    async def drain_fragments(self) -> None:
        """Wait until every fragment received so far has been processed."""
        queue = self._fragments
        if queue is not None:
            await queue.join()

    async def _consume_fragments(self, queue: asyncio.Queue[bytes]) -> None:
        while True:
            data = await queue.get()
            try:
                await self._process_fragment(data)
            except Exception:
                logger.exception("Fragment processing failed (%d bytes)", len(data))
            finally:
                queue.task_done()

    async def _process_fragment(self, data: bytes) -> None:
        logger.debug("Notification received: %d bytes", len(data))
        result = self._reassembler.feed(data)

        if result.passthrough is not None:
            self._emit_payload(result.passthrough)
            return
        if not result.accepted:
            return
        if result.started:
            self._peek.rearm()

        received, expected = self._reassembler.progress()
        if self._peek.is_due(self._reassembler.message_type, self._reassembler.payload_size):
            cancel = self._peek.evaluate(
                self._reassembler.peek(PEEK_SIZE), expected, self._reassembler.fragment_size
            )
            if cancel:
                name = self._request.clean_name if self._request else "?"
                logger.info("Smart peek: '%s' is outside the filter window, skipping", name)
                await self.cancel_download()
                return

        self._report_progress(received, expected)

        if result.completed_seq is not None:
            self._call_later(
                self._timing.message_settle, self._finish_message, result.completed_seq
            )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _on_watchdog_force(self, reason: str) -> None:
        self._finish_message(None, reason)

    def _finish_message(self, seq: Optional[int], reason: str = "complete") -> None:
        message = self._reassembler.finish(seq)
        if message is None:
            return
        self._watchdog.cancel()

        logger.info(
            "Message %d finished (%s): %d/%d fragments, %d bytes",
            message.seq,
            reason,
            message.received,
            message.expected,
            len(message.payload),
        )
        self._report_progress(message.received, message.expected, force=True)
        self._emit_payload(message.payload)

    def _report_progress(self, received: int, expected: int, force: bool = False) -> None:
        request = self._request
        if request is None or expected <= 0 or self._on_progress is None:
            return

        now = self._activity.now()
        finished = received >= expected
        if (
            not force
            and not finished
            and now - self._last_progress_at < self._timing.progress_interval
        ):
            return

        file_percent = min(received * 100 // expected, 100)
        overall = overall_percent(request.current_index, request.total_files, file_percent)
        if overall == self._last_percent:
            return

        self._last_percent = overall
        self._last_progress_at = now
        self._emit(
            self._on_progress,
            DownloadProgress(
                current_index=request.current_index,
                total_files=request.total_files,
                received=received,
                expected=expected,
                file_percent=file_percent,
                overall_percent=overall,
            ),
        )

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Destroy the session; pending delayed actions never fire afterwards."""
        if self._closed:
            return
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        self._scan_timer = None

        await self.stop_scan()
        if self._device is not None:
            await self.disconnect()
        else:
            await self._teardown_connection()
        await self.flush_writes()

        self._closed = True
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()
        logger.debug("Session closed")

    def _call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle:
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)  # type: ignore[arg-type]
            if self._closed:
                return
            callback(*args)

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.add(handle)
        return handle

    def _spawn(self, factory: Callable[[], Coroutine[Any, Any, Any]]) -> None:
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(factory())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_status(self, status: str) -> None:
        logger.info("Status: %s", status)
        self._emit(self._on_status, status)

    def _emit_payload(self, payload: bytes) -> None:
        self._emit(self._on_payload, payload)

    @staticmethod
    def _emit(callback: Optional[Callable[[Any], None]], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Event callback failed")
