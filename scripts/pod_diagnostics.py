#!/usr/bin/env python3
"""
BLE diagnostics for Pod devices: Bluetooth state, scan, and optional connection test.
"""

import argparse
import asyncio
import logging
import platform
import subprocess
import sys

from bleak import BleakScanner

from pod_connector import BleakTransport, PodSession, accept, filter_advertisement, parse_address
from pod_connector.address import InvalidAddressFormat

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


async def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and working."""
    logger.info("Checking Bluetooth status...")

    system = platform.system().lower()

    if system == "darwin":  # macOS
        try:
            result = subprocess.run(
                ["system_profiler", "SPBluetoothDataType"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            if "State: On" in result.stdout:
                logger.info("Bluetooth is enabled on macOS")
                return True
            logger.error("Bluetooth appears to be disabled on macOS")
            return False
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Could not check Bluetooth status on macOS: %s", e)
            return True

    elif system == "linux":
        try:
            result = subprocess.run(
                ["bluetoothctl", "show"], capture_output=True, text=True, timeout=10
            )
            if "Powered: yes" in result.stdout:
                logger.info("Bluetooth is powered on Linux")
                return True
            logger.error("Bluetooth appears to be powered off on Linux")
            return False
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Could not check Bluetooth status on Linux: %s", e)
            return True

    logger.warning("Bluetooth status check not implemented for %s", system)
    return True


async def scan_for_pods(duration: float) -> None:
    """Scan for nearby BLE devices and point out the Pods among them."""
    logger.info("Scanning for BLE devices for %ss...", duration)

    try:
        discovered = await BleakScanner.discover(timeout=duration, return_adv=True)
    except Exception as e:
        logger.error("Error during BLE scan: %s", e)
        return

    if not discovered:
        logger.error("No BLE devices found")
        logger.info("Troubleshooting:")
        logger.info("   - Make sure the Pod is powered on and not connected elsewhere")
        logger.info("   - Move closer to the Pod")
        return

    logger.info("Found %d BLE device(s):", len(discovered))

    pods = []
    for device, adv in discovered.values():
        name = adv.local_name or device.name
        logger.info("   %s (%s) RSSI: %sdBm", name or "Unknown", device.address, adv.rssi)
        if not accept(name):
            continue
        try:
            result = filter_advertisement(name, parse_address(device.address), adv.rssi)
        except InvalidAddressFormat:
            logger.info("      Pod found, but this platform hides its MAC address")
            continue
        if result is not None:
            pods.append(result)
            logger.info("      Pod found: connect with --address %s", result.id)

    if pods:
        logger.info("\nFound %d Pod(s)", len(pods))
    else:
        logger.warning("\nNo devices advertising a 'POD' name found")


async def test_connection(address: str) -> None:
    """Connect to the Pod at ``address`` and report each status change."""
    logger.info("\nTesting connection to %s...", address)

    statuses = []

    def on_status(status: str) -> None:
        statuses.append(status)
        logger.info("   status: %s", status)

    async with PodSession(BleakTransport(), on_status=on_status) as session:
        await session.connect(address)
        if session.is_connected:
            await asyncio.sleep(2.0)
            await session.flush_writes()
            logger.info("Connection test passed")
        else:
            logger.error("Connection test failed: %s", statuses[-1] if statuses else "?")


async def main() -> None:
    """Run BLE diagnostics."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--address", help="Also test a connection to this Pod")
    parser.add_argument("--duration", type=float, default=15.0, help="Scan seconds")
    args = parser.parse_args()

    logger.info("Pod BLE Diagnostics")
    logger.info("=" * 40)

    bt_ok = await check_bluetooth_status()
    if not bt_ok:
        logger.error("\nBluetooth issues detected. Please enable Bluetooth and try again.")
        return

    await scan_for_pods(duration=args.duration)

    if args.address:
        await test_connection(args.address)

    logger.info("\nDiagnostics complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("\nDiagnostics cancelled by user")
    except Exception as e:
        logger.error("Diagnostics error: %s", e)
        sys.exit(1)
