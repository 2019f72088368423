from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .address import InvalidAddressFormat, format_address, parse_address
from .advertisement import ScanResult, accept, filter_advertisement
from .config import DEFAULT_TIMING, SessionTiming
from .protocol import RESET_COMMAND, SKIP_MARKER, DownloadRequest
from .recorder import PayloadRecorder
from .runner import run
from .session import DownloadProgress, PodSession
from .transport import BleakTransport, Transport

__all__ = [
    "BleakTransport",
    "DEFAULT_TIMING",
    "DownloadProgress",
    "DownloadRequest",
    "InvalidAddressFormat",
    "PayloadRecorder",
    "PodSession",
    "RESET_COMMAND",
    "SKIP_MARKER",
    "ScanResult",
    "SessionTiming",
    "Transport",
    "accept",
    "filter_advertisement",
    "format_address",
    "main",
    "parse_address",
]


def _hex_command(text: str) -> bytes:
    try:
        data = bytes.fromhex(text.replace(":", "").replace(" ", ""))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a hex string: {text!r}")
    if not data:
        raise argparse.ArgumentTypeError("empty command")
    return data


def main() -> None:
    """Entry point of the ``pod-connector`` command."""
    parser = argparse.ArgumentParser(
        prog="pod-connector",
        description="Scan for Pod devices over BLE and download recorded files from them.",
    )
    parser.add_argument(
        "--scan",
        action="store_true",
        help="List nearby Pods for one scan window and exit",
    )
    parser.add_argument(
        "--address", help="BLE address of the Pod to connect to (aa:bb:cc:dd:ee:ff)"
    )
    parser.add_argument(
        "--download",
        dest="filenames",
        action="append",
        default=[],
        metavar="NAME",
        help="File to download; repeat to download several files in order",
    )
    parser.add_argument(
        "--filter-start",
        type=int,
        default=0,
        metavar="MS",
        help="Skip recordings ending before this epoch time in ms (0: unset)",
    )
    parser.add_argument(
        "--filter-end",
        type=int,
        default=0,
        metavar="MS",
        help="Skip recordings starting after this epoch time in ms (0: unset)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("downloads"),
        help="Directory for downloaded files (default: ./downloads)",
    )
    parser.add_argument(
        "--command",
        dest="commands",
        action="append",
        type=_hex_command,
        default=[],
        metavar="HEX",
        help="Raw command to send after connecting, e.g. 08; may be repeated",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=DEFAULT_TIMING.scan_window,
        help="Scan window in seconds",
    )
    parser.add_argument(
        "--file-timeout",
        type=float,
        default=120.0,
        help="Give up on a file after this many seconds without a payload",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )

    args = parser.parse_args()

    # Results go to stdout, logs to stderr and the optional file
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            file_handler = logging.FileHandler(args.log_file, encoding="utf-8")
            handlers.append(file_handler)
        except OSError as e:
            print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    if not args.scan and not args.address:
        parser.error("either --scan or --address is required")

    timing = replace(DEFAULT_TIMING, scan_window=args.scan_timeout)
    code = run(
        scan=args.scan,
        address=args.address,
        filenames=args.filenames,
        output_dir=args.output_dir,
        filter_start=args.filter_start,
        filter_end=args.filter_end,
        commands=args.commands,
        file_timeout=args.file_timeout,
        timing=timing,
    )
    raise SystemExit(code)
