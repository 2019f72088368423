"""Keep the host awake while a Pod session is connected."""

from __future__ import annotations

import logging
import os
import platform
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)

# SetThreadExecutionState flags
ES_CONTINUOUS = 0x80000000
ES_SYSTEM_REQUIRED = 0x00000001


class SleepInhibitor:
    """Best-effort, idempotent system sleep prevention.

    Windows uses ``SetThreadExecutionState``; macOS runs ``caffeinate``
    tied to this process. Other platforms are left alone. Failures are
    logged and never raised.
    """

    def __init__(self, system: Optional[str] = None) -> None:
        self._system = (system or platform.system()).lower()
        self._active = False
        self._process: Optional[subprocess.Popen[bytes]] = None

    @property
    def active(self) -> bool:
        """True while sleep prevention is held."""
        return self._active

    def acquire(self) -> None:
        """Prevent system sleep until :meth:`release`."""
        if self._active:
            return
        self._active = True
        try:
            if self._system == "windows":
                self._set_execution_state(ES_CONTINUOUS | ES_SYSTEM_REQUIRED)
            elif self._system == "darwin":
                self._process = subprocess.Popen(
                    ["caffeinate", "-i", "-w", str(os.getpid())],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            else:
                logger.debug("Sleep prevention not implemented for %s", self._system)
        except Exception as e:
            logger.warning("Could not prevent system sleep: %s", e)

    def release(self) -> None:
        """Allow system sleep again."""
        if not self._active:
            return
        self._active = False
        try:
            if self._system == "windows":
                self._set_execution_state(ES_CONTINUOUS)
            elif self._process is not None:
                self._process.terminate()
                self._process.wait(timeout=2.0)
        except Exception as e:
            logger.warning("Could not release sleep prevention: %s", e)
        finally:
            self._process = None

    @staticmethod
    def _set_execution_state(flags: int) -> None:
        import ctypes

        ctypes.windll.kernel32.SetThreadExecutionState(flags)  # type: ignore[attr-defined]
