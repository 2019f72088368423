"""Persistence of downloaded Pod payloads.

Each downloaded file is written as ``<name>.bin`` holding the reassembled
payload, next to a ``<name>.meta.json`` companion describing it. Files the
session skipped (smart peek or manual cancel) only get the metadata file,
marked ``"skipped": true``.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .protocol import SKIP_MARKER, clean_filename

logger = logging.getLogger(__name__)


@dataclass
class RecordingInfo:
    """Information about one recorded download."""

    name: str
    requested_at: datetime
    finished_at: datetime
    size_bytes: int
    message_type: Optional[int]
    skipped: bool
    file_path: Optional[Path]


def _safe_stem(name: str) -> str:
    stem = clean_filename(name).strip() or "unnamed"
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in stem)


class PayloadRecorder:
    """Writes payloads delivered by :class:`~pod_connector.session.PodSession`.

    Args:
        output_dir: Directory receiving the ``.bin`` and ``.meta.json`` files.
            Created if missing.
    """

    def __init__(self, output_dir: Path):
        self._output_dir = Path(output_dir)
        self._lock = threading.Lock()
        self._output_dir.mkdir(parents=True, exist_ok=True)

    @property
    def output_dir(self) -> Path:
        """Directory recordings are written to."""
        return self._output_dir

    def save(
        self,
        name: str,
        payload: bytes,
        requested_at: Optional[datetime] = None,
    ) -> RecordingInfo:
        """Record ``payload`` as the content of file ``name``.

        A payload equal to the skip marker is recorded as a skipped file.
        """
        finished_at = datetime.now(timezone.utc)
        requested_at = requested_at or finished_at
        stem = _safe_stem(name)
        skipped = payload == SKIP_MARKER

        with self._lock:
            data_path: Optional[Path] = None
            if not skipped:
                data_path = self._output_dir / f"{stem}.bin"
                data_path.write_bytes(payload)

            info = RecordingInfo(
                name=clean_filename(name),
                requested_at=requested_at,
                finished_at=finished_at,
                size_bytes=0 if skipped else len(payload),
                message_type=payload[0] if payload and not skipped else None,
                skipped=skipped,
                file_path=data_path,
            )
            self._write_metadata_file(self._output_dir / f"{stem}.meta.json", info)

        if skipped:
            logger.info("Skipped file recorded: %s", info.name)
        else:
            logger.info("Saved %s: %d bytes -> %s", info.name, info.size_bytes, data_path)
        return info

    def _write_metadata_file(self, metadata_path: Path, info: RecordingInfo) -> None:
        """Write companion metadata file."""
        metadata = {
            "name": info.name,
            "requested_at": info.requested_at.isoformat(),
            "finished_at": info.finished_at.isoformat(),
            "size_bytes": info.size_bytes,
            "message_type": info.message_type,
            "skipped": info.skipped,
            "file_path": str(info.file_path) if info.file_path else None,
        }

        try:
            with open(metadata_path, "w", encoding="utf-8") as f:
                json.dump(metadata, f, indent=2)
        except OSError as e:
            logger.warning("Failed to write metadata file: %s", e)

    def list_recordings(self, limit: int = 50) -> List[RecordingInfo]:
        """List recorded downloads, newest first."""
        recordings = []

        for meta_file in self._output_dir.glob("*.meta.json"):
            try:
                with open(meta_file, "r", encoding="utf-8") as f:
                    metadata = json.load(f)

                recordings.append(
                    RecordingInfo(
                        name=metadata["name"],
                        requested_at=datetime.fromisoformat(metadata["requested_at"]),
                        finished_at=datetime.fromisoformat(metadata["finished_at"]),
                        size_bytes=metadata["size_bytes"],
                        message_type=metadata.get("message_type"),
                        skipped=metadata.get("skipped", False),
                        file_path=Path(metadata["file_path"])
                        if metadata.get("file_path")
                        else None,
                    )
                )
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Error reading metadata file %s: %s", meta_file, e)

        recordings.sort(key=lambda x: x.finished_at, reverse=True)
        return recordings[:limit]
