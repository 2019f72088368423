"""Command-line workflows built on :class:`~pod_connector.session.PodSession`.

Two workflows are provided:

- **Scan**: list nearby Pods for one scan window
- **Download**: connect to one Pod, optionally send raw commands, then
  download a batch of files one after the other, recording each payload
  with :class:`~pod_connector.recorder.PayloadRecorder`

Both are coroutines; :func:`run` wraps them for synchronous CLI use and
maps their outcome to a process exit code.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from .advertisement import ScanResult
from .config import DEFAULT_TIMING, SessionTiming
from .recorder import PayloadRecorder, RecordingInfo
from .session import DownloadProgress, PodSession
from .transport import BleakTransport, Transport

logger = logging.getLogger(__name__)


async def scan_devices(
    transport: Optional[Transport] = None,
    timing: SessionTiming = DEFAULT_TIMING,
) -> list[ScanResult]:
    """Scan for one scan window and return the Pods seen, strongest first."""
    found: dict[str, ScanResult] = {}

    def on_scan_result(result: ScanResult) -> None:
        if result.id not in found:
            logger.info("Found %s (%s) RSSI: %ddBm", result.name, result.id, result.rssi)
        found[result.id] = result

    async with PodSession(
        transport or BleakTransport(connect_timeout=timing.connect_timeout),
        timing=timing,
        on_scan_result=on_scan_result,
    ) as session:
        await session.start_scan()
        if not session.is_scanning:
            raise RuntimeError("BLE scan could not be started")
        await asyncio.sleep(timing.scan_window)
        await session.stop_scan()

    return sorted(found.values(), key=lambda r: r.rssi, reverse=True)


async def download_files(
    address: str,
    filenames: Sequence[str],
    output_dir: Path,
    *,
    filter_start: int = 0,
    filter_end: int = 0,
    commands: Sequence[bytes] = (),
    file_timeout: float = 120.0,
    transport: Optional[Transport] = None,
    timing: SessionTiming = DEFAULT_TIMING,
) -> list[RecordingInfo]:
    """Connect to ``address`` and download ``filenames`` in order.

    Raises:
        RuntimeError: If the Pod could not be connected.
    """
    recorder = PayloadRecorder(output_dir)
    payloads: asyncio.Queue[bytes] = asyncio.Queue()
    statuses: list[str] = []

    def on_progress(progress: DownloadProgress) -> None:
        logger.info(
            "File %d/%d: %d%% (%d/%d fragments), overall %d%%",
            progress.current_index,
            progress.total_files,
            progress.file_percent,
            progress.received,
            progress.expected,
            progress.overall_percent,
        )

    recordings: list[RecordingInfo] = []
    async with PodSession(
        transport or BleakTransport(connect_timeout=timing.connect_timeout),
        timing=timing,
        on_status=statuses.append,
        on_payload=payloads.put_nowait,
        on_progress=on_progress,
    ) as session:
        await session.connect(address)
        if not session.is_connected:
            status = statuses[-1] if statuses else "no status"
            raise RuntimeError(f"Could not connect to {address}: {status}")

        # Let the buffer reset go out before the first request
        await asyncio.sleep(timing.connect_settle)
        await session.flush_writes()

        for command in commands:
            logger.info("Sending command: %s", command.hex())
            session.write_command(command)
        await session.flush_writes()

        total = len(filenames)
        for index, name in enumerate(filenames, start=1):
            if not session.is_connected:
                raise RuntimeError(f"Connection lost before downloading '{name}'")
            _drain(payloads)
            requested_at = datetime.now(timezone.utc)
            await session.download_file(
                name,
                filter_start=filter_start,
                filter_end=filter_end,
                total_files=total,
                current_index=index,
            )

            try:
                payload = await asyncio.wait_for(payloads.get(), timeout=file_timeout)
            except asyncio.TimeoutError:
                logger.warning("No payload for '%s' after %.1fs, skipping", name, file_timeout)
                await session.cancel_download()
                payload = await payloads.get()

            recordings.append(recorder.save(name, payload, requested_at=requested_at))

    return recordings


def _drain(queue: asyncio.Queue[bytes]) -> None:
    while not queue.empty():
        stale = queue.get_nowait()
        logger.debug("Dropping stale payload (%d bytes)", len(stale))


def run(
    *,
    scan: bool = False,
    address: Optional[str] = None,
    filenames: Sequence[str] = (),
    output_dir: Path = Path("downloads"),
    filter_start: int = 0,
    filter_end: int = 0,
    commands: Sequence[bytes] = (),
    file_timeout: float = 120.0,
    timing: SessionTiming = DEFAULT_TIMING,
) -> int:
    """Synchronous CLI wrapper around :func:`scan_devices` and :func:`download_files`.

    Returns:
        int: Exit code following Unix conventions:
            0: Normal completion
            1: Error termination (Bluetooth unavailable, connection failures, etc.)
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """
    try:
        if scan:
            results = asyncio.run(scan_devices(timing=timing))
            for result in results:
                print(f"{result.id}\t{result.rssi}\t{result.name}", file=sys.stdout)
            if not results:
                logger.warning("No Pods found")
            return 0

        if not address:
            raise RuntimeError("--address is required unless --scan is given")
        recordings = asyncio.run(
            download_files(
                address,
                filenames,
                output_dir,
                filter_start=filter_start,
                filter_end=filter_end,
                commands=commands,
                file_timeout=file_timeout,
                timing=timing,
            )
        )
        for info in recordings:
            state = "skipped" if info.skipped else f"{info.size_bytes} bytes"
            print(f"{info.name}\t{state}", file=sys.stdout)
        return 0
    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
