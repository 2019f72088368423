"""Static configuration for the Pod session engine.

GATT identifiers match the Pod firmware. Timing values are grouped in
:class:`SessionTiming` so that tests and the CLI can shrink or stretch
them without touching the engine.
"""

from __future__ import annotations

from dataclasses import dataclass

# Pod GATT service and characteristics
POD_SERVICE = "761993fb-ad28-4438-a7b0-6ab3f2e03816"
POD_NOTIFY_CHAR = "5e0c4072-ee4d-450d-90a5-a1fefdb84692"  # Notify (Pod to host)
POD_WRITE_CHAR = "fb4a9352-9bcd-4cc6-80e4-ae37d16ffbf1"  # Write (host to Pod)

DEVICE_NAME_PREFIX = "POD"


@dataclass(frozen=True)
class SessionTiming:
    """Delays and thresholds used by the session controller and watchdog.

    Attributes:
        scan_window: Seconds before an active scan stops by itself.
        connect_settle: Delay after subscribing before the reset command
            is sent, giving the Pod time to enable notifications.
        message_settle: Grace period between the last expected fragment
            and message hand-off, for straggling fragments.
        skip_delay: Delay before the synthetic skip payload is emitted
            after a cancellation.
        watchdog_poll: Watchdog polling period.
        hard_timeout: Seconds without a fragment before an open message
            is abandoned.
        stall_timeout: Seconds without a fragment before a nearly
            complete message is finished early.
        stall_progress: Progress ratio above which a message counts as
            nearly complete.
        progress_interval: Minimum seconds between progress events.
        connect_timeout: Transport-level connection timeout.
    """

    scan_window: float = 15.0
    connect_settle: float = 1.0
    message_settle: float = 0.05
    skip_delay: float = 0.6
    watchdog_poll: float = 1.0
    hard_timeout: float = 60.0
    stall_timeout: float = 2.5
    stall_progress: float = 0.98
    progress_interval: float = 0.5
    connect_timeout: float = 20.0


DEFAULT_TIMING = SessionTiming()
