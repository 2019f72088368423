"""Pod application protocol: wire constants and command frames.

Commands are written to the Pod's write characteristic; the Pod answers
on the notify characteristic with fragmented messages (see
:mod:`pod_connector.reassembler`).

Command layout::

    reset     : 08
    download  : 06 20 <filename, 32 bytes, zero padded>
"""

from __future__ import annotations

from dataclasses import dataclass

RESET_COMMAND = b"\x08"

DOWNLOAD_COMMAND = 0x06
DOWNLOAD_SUBTYPE = 0x20
FILENAME_FIELD_SIZE = 32
DOWNLOAD_COMMAND_SIZE = 2 + FILENAME_FIELD_SIZE

# Synthetic payload emitted to the host when a download was skipped
SKIP_MARKER = b"\xda"

# Message type tag of recorded sensor files (the only type smart peek reads)
RECORDING_TAG = 0x03

# Fragment layout
FRAGMENT_HEADER_SIZE = 5
FIRST_FRAGMENT_HEADER_SIZE = 9
COUNT_OFFSET = 5


def clean_filename(filename: str) -> str:
    """Strip a ``" (copy)"`` style suffix and trailing spaces from a filename.

    >>> clean_filename("Log (copy)  ")
    'Log'
    """
    return filename.split("(", 1)[0].rstrip(" ")


def encode_filename(filename: str) -> bytes:
    """Clean ``filename`` and encode it into the 32-byte filename field."""
    raw = clean_filename(filename).encode("ascii", errors="replace")
    return raw[:FILENAME_FIELD_SIZE].ljust(FILENAME_FIELD_SIZE, b"\x00")


def build_download_command(filename: str) -> bytes:
    """Build the 34-byte download request frame for ``filename``."""
    return bytes([DOWNLOAD_COMMAND, DOWNLOAD_SUBTYPE]) + encode_filename(filename)


@dataclass(frozen=True)
class DownloadRequest:
    """A single file download issued by the host.

    Attributes:
        filename: File name as listed by the Pod; cleaned before sending.
        filter_start: Lower bound of the time filter in epoch ms, 0 if unset.
        filter_end: Upper bound of the time filter in epoch ms, 0 if unset.
        total_files: Number of files in the current batch.
        current_index: 1-based index of this file within the batch.
    """

    filename: str
    filter_start: int = 0
    filter_end: int = 0
    total_files: int = 1
    current_index: int = 1

    @property
    def is_filtering(self) -> bool:
        """True if either filter bound is set."""
        return self.filter_start > 0 or self.filter_end > 0

    @property
    def clean_name(self) -> str:
        """Filename as it is sent to the Pod."""
        return clean_filename(self.filename)

    def to_command(self) -> bytes:
        """Build the download frame for this request."""
        return build_download_command(self.filename)
