"""Wireless transport used by the Pod session.

The session engine only needs a handful of GATT primitives. They are
collected in the :class:`Transport` interface so the engine can run on
any BLE stack, or on an in-memory fake in tests. :class:`BleakTransport`
is the production implementation on top of bleak.

Requirements:
- bleak: Cross-platform BLE library for scanning and GATT access
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .address import InvalidAddressFormat, format_address, parse_address
from .config import POD_NOTIFY_CHAR, POD_SERVICE, POD_WRITE_CHAR

logger = logging.getLogger(__name__)

AdvertisementCallback = Callable[[Optional[str], int, int], None]
FragmentCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]

# Errors a BLE stack raises for link-level failures
TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


@dataclass(frozen=True)
class GattEndpoints:
    """The two characteristics of the Pod service.

    Attributes:
        notify: Characteristic the Pod notifies fragments on.
        write: Characteristic commands are written to.
    """

    notify: Any
    write: Any


class Transport(ABC):
    """Abstract BLE transport consumed by :class:`~pod_connector.session.PodSession`.

    Handles returned by :meth:`connect` are opaque to the session and
    only ever passed back into the same transport.
    """

    @abstractmethod
    async def start_scan(self, on_advertisement: AdvertisementCallback) -> None:
        """Start discovery.

        Args:
            on_advertisement: Called with ``(advertised_name, raw_address,
                rssi)`` for every advertisement received, where
                ``raw_address`` is the 48-bit link-layer address.
        """
        pass

    @abstractmethod
    async def stop_scan(self) -> None:
        """Stop discovery. Safe to call when no scan is running."""
        pass

    @abstractmethod
    async def connect(
        self, address: int, on_disconnect: Optional[DisconnectCallback] = None
    ) -> Optional[Any]:
        """Connect to the device at ``address``.

        Returns:
            A device handle, or ``None`` if the device could not be found.

        Raises:
            Transport-specific errors for failed connection attempts.
        """
        pass

    @abstractmethod
    async def discover(self, device: Any) -> Optional[GattEndpoints]:
        """Locate the Pod service and its characteristics, ``None`` if missing."""
        pass

    @abstractmethod
    async def subscribe(
        self, device: Any, endpoints: GattEndpoints, on_fragment: FragmentCallback
    ) -> None:
        """Enable notifications and deliver each notification to ``on_fragment``."""
        pass

    @abstractmethod
    async def write(self, device: Any, endpoints: GattEndpoints, data: bytes) -> bool:
        """Write ``data`` with response; return False if the write failed."""
        pass

    @abstractmethod
    async def disconnect(self, device: Any) -> None:
        """Tear down the connection. Safe to call on a dead link."""
        pass


class BleakTransport(Transport):
    """:class:`Transport` implementation using bleak.

    Args:
        service_uuid: Pod GATT service.
        notify_char_uuid: Characteristic the Pod notifies on.
        write_char_uuid: Characteristic commands are written to.
        connect_timeout: Seconds allowed for locating and connecting.
    """

    def __init__(
        self,
        *,
        service_uuid: str = POD_SERVICE,
        notify_char_uuid: str = POD_NOTIFY_CHAR,
        write_char_uuid: str = POD_WRITE_CHAR,
        connect_timeout: float = 20.0,
    ) -> None:
        self._service_uuid = service_uuid
        self._notify_char_uuid = notify_char_uuid
        self._write_char_uuid = write_char_uuid
        self._connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None

    async def start_scan(self, on_advertisement: AdvertisementCallback) -> None:
        await self.stop_scan()

        def detection(dev: BLEDevice, adv: AdvertisementData) -> None:
            try:
                raw_address = parse_address(dev.address)
            except InvalidAddressFormat:
                # CoreBluetooth reports UUIDs instead of link-layer addresses
                logger.debug("Ignoring device without MAC address: %s", dev.address)
                return
            on_advertisement(adv.local_name or dev.name, raw_address, adv.rssi)

        self._scanner = BleakScanner(detection_callback=detection)
        await self._scanner.start()
        logger.info("BLE scan started")

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
            logger.info("BLE scan stopped")
        except BleakError as e:
            logger.debug("Scanner stop failed: %s", e)

    async def connect(
        self, address: int, on_disconnect: Optional[DisconnectCallback] = None
    ) -> Optional[BleakClient]:
        address_text = format_address(address).upper()
        device = await BleakScanner.find_device_by_address(
            address_text, timeout=self._connect_timeout
        )
        if device is None:
            logger.warning("Device %s not found", address_text)
            return None

        def disconnected(_: BleakClient) -> None:
            logger.info("BLE connection lost (callback): %s", address_text)
            if on_disconnect is not None:
                on_disconnect()

        client = BleakClient(
            device, disconnected_callback=disconnected, timeout=self._connect_timeout
        )
        logger.info("BLE connection starting: %s", address_text)
        await client.connect()
        logger.info("BLE connection established: %s (mtu=%d)", address_text, client.mtu_size)
        return client

    async def discover(self, device: BleakClient) -> Optional[GattEndpoints]:
        service = device.services.get_service(self._service_uuid)
        if service is None:
            logger.warning("Service %s not found", self._service_uuid)
            return None

        notify = service.get_characteristic(self._notify_char_uuid)
        write = service.get_characteristic(self._write_char_uuid)
        if notify is None or write is None:
            logger.warning(
                "Pod characteristics missing: notify=%s write=%s",
                notify is not None,
                write is not None,
            )
            return None
        return GattEndpoints(notify=notify, write=write)

    async def subscribe(
        self, device: BleakClient, endpoints: GattEndpoints, on_fragment: FragmentCallback
    ) -> None:
        logger.info("Starting notification subscription: char=%s", self._notify_char_uuid)
        await device.start_notify(
            endpoints.notify, lambda _, data: on_fragment(bytes(data))
        )

    async def write(self, device: BleakClient, endpoints: GattEndpoints, data: bytes) -> bool:
        try:
            await device.write_gatt_char(endpoints.write, data, response=True)
            return True
        except TRANSPORT_ERRORS as e:
            logger.debug("Write of %d bytes failed: %s", len(data), e)
            return False

    async def disconnect(self, device: BleakClient) -> None:
        try:
            await device.disconnect()
        except TRANSPORT_ERRORS as e:
            logger.debug("Disconnect failed: %s", e)
