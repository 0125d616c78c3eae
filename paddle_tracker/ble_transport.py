"""
Bleak-backed polled transport

Adapts bleak's coroutine API to the non-blocking polled interface the link
state machine expects. Every request spawns a task on the running asyncio
loop; results land in queues that the poll_* methods drain. Must be driven
from code running inside that loop (PaddleTracker.run does this).

Every quit() starts a new generation: callbacks and tasks left over from an
older generation are ignored, so a restart never sees stale results.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .transport import BleData, DevicePoll, DeviceUpdate, ScanStatus, Transport, UuidPoll

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0  # seconds
MAX_BUFFERED_FRAMES = 1024

_BLE_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


class BleakTransport(Transport):
    """Polled transport on top of BleakScanner / BleakClient"""

    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout

        self._scanner: Optional[BleakScanner] = None
        self._client: Optional[BleakClient] = None
        self._device_address: Optional[str] = None

        self._devices: Deque[DeviceUpdate] = deque()
        self._services: Deque[str] = deque()
        self._characteristics: Deque[str] = deque()
        self._data: Deque[BleData] = deque(maxlen=MAX_BUFFERED_FRAMES)

        self._device_scan_active = False
        self._service_scan_done = True
        self._characteristic_scan_done = True

        self._error = "Ok"
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._cleanup_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Device scan
    # ------------------------------------------------------------------

    def start_device_scan(self) -> None:
        self._devices.clear()
        self._device_scan_active = True
        self._spawn(self._run_device_scan(self._generation))

    async def _run_device_scan(self, generation: int):
        def detection_callback(device, advertisement_data):
            if generation != self._generation:
                return
            name = advertisement_data.local_name or device.name or ""
            self._devices.append(DeviceUpdate(id=device.address, name=name))

        scanner = BleakScanner(detection_callback=detection_callback)
        self._scanner = scanner
        try:
            await scanner.start()
        except _BLE_ERRORS as e:
            if generation == self._generation:
                self._set_error(f"Error scanning devices: {e}")
                self._device_scan_active = False
                self._scanner = None

    def stop_device_scan(self) -> None:
        self._device_scan_active = False
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._quietly(scanner.stop(), "stopping scanner"), cleanup=True)

    def poll_device(self) -> DevicePoll:
        if self._devices:
            return ScanStatus.AVAILABLE, self._devices.popleft()
        if self._device_scan_active:
            return ScanStatus.PENDING, None
        return ScanStatus.FINISHED, None

    # ------------------------------------------------------------------
    # GATT discovery
    # ------------------------------------------------------------------

    def scan_services(self, device_id: str) -> None:
        self._services.clear()
        self._service_scan_done = False
        self._spawn(self._run_service_scan(self._generation, device_id))

    async def _run_service_scan(self, generation: int, device_id: str):
        try:
            client = await self._ensure_client(device_id)
            if generation == self._generation:
                for service in client.services:
                    self._services.append(service.uuid)
        except _BLE_ERRORS as e:
            if generation == self._generation:
                self._set_error(f"Error scanning services: {e}")
        finally:
            if generation == self._generation:
                self._service_scan_done = True

    def poll_service(self) -> UuidPoll:
        if self._services:
            return ScanStatus.AVAILABLE, self._services.popleft()
        if not self._service_scan_done:
            return ScanStatus.PENDING, None
        return ScanStatus.FINISHED, None

    def scan_characteristics(self, device_id: str, service_id: str) -> None:
        self._characteristics.clear()
        self._characteristic_scan_done = False
        self._spawn(self._run_characteristic_scan(self._generation, device_id, service_id))

    async def _run_characteristic_scan(self, generation: int, device_id: str, service_id: str):
        try:
            client = await self._ensure_client(device_id)
            service = client.services.get_service(service_id)
            if service is None:
                raise BleakError(f"service {service_id} not present")
            if generation == self._generation:
                for char in service.characteristics:
                    self._characteristics.append(char.uuid)
        except _BLE_ERRORS as e:
            if generation == self._generation:
                self._set_error(f"Error scanning characteristics: {e}")
        finally:
            if generation == self._generation:
                self._characteristic_scan_done = True

    def poll_characteristic(self) -> UuidPoll:
        if self._characteristics:
            return ScanStatus.AVAILABLE, self._characteristics.popleft()
        if not self._characteristic_scan_done:
            return ScanStatus.PENDING, None
        return ScanStatus.FINISHED, None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe_characteristic(self, device_id: str, service_id: str,
                                 char_uuid: str, block: bool = False) -> bool:
        if self._client is None or self._device_address != device_id:
            self._set_error(f"Not connected to {device_id}")
            return False

        self._spawn(self._run_subscribe(self._generation, device_id, char_uuid))
        return True

    async def _run_subscribe(self, generation: int, device_id: str, char_uuid: str):
        def notification_handler(sender, data: bytearray):
            if generation == self._generation:
                self._data.append(BleData(device_id=device_id, buf=bytes(data)))

        try:
            client = await self._ensure_client(device_id)
            await client.start_notify(char_uuid, notification_handler)
            logger.debug(f"Notifications enabled on {char_uuid}")
        except _BLE_ERRORS as e:
            if generation == self._generation:
                self._set_error(f"Error subscribing: {e}")

    def poll_data(self) -> Optional[BleData]:
        if self._data:
            return self._data.popleft()
        return None

    # ------------------------------------------------------------------
    # Errors / teardown
    # ------------------------------------------------------------------

    def get_error(self) -> str:
        return self._error

    def quit(self) -> None:
        self._generation += 1

        for task in list(self._tasks):
            task.cancel()

        scanner, self._scanner = self._scanner, None
        client, self._client = self._client, None
        self._device_address = None

        if scanner is not None:
            self._spawn(self._quietly(scanner.stop(), "stopping scanner"), cleanup=True)
        if client is not None:
            self._spawn(self._quietly(client.disconnect(), "disconnecting"), cleanup=True)

        self._devices.clear()
        self._services.clear()
        self._characteristics.clear()
        self._data.clear()
        self._device_scan_active = False
        self._service_scan_done = True
        self._characteristic_scan_done = True
        self._error = "Ok"

    async def aclose(self):
        """Quit and wait for the radio to be released"""
        self.quit()
        pending = self._tasks | self._cleanup_tasks
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------

    async def _ensure_client(self, device_id: str) -> BleakClient:
        if (self._client is not None and self._device_address == device_id
                and self._client.is_connected):
            return self._client

        client = BleakClient(device_id, disconnected_callback=self._disconnected_callback)
        self._client = client
        self._device_address = device_id
        logger.info(f"Connecting to {device_id}...")
        await asyncio.wait_for(client.connect(), timeout=self.connect_timeout)
        logger.info(f"Connected to {device_id}")
        return client

    def _disconnected_callback(self, client):
        if client is self._client:
            logger.warning("Disconnected from device!")
            self._set_error("Device disconnected")

    def _set_error(self, message: str):
        self._error = message

    def _spawn(self, coro, cleanup: bool = False):
        """Schedule coro on the running loop. Cleanup tasks survive quit()."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (e.g. quit() after the loop closed): nothing to release
            coro.close()
            return
        tasks = self._cleanup_tasks if cleanup else self._tasks
        task = loop.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    @staticmethod
    async def _quietly(coro, what: str):
        try:
            await coro
        except Exception as e:
            logger.debug(f"Ignored error while {what}: {e}")
