"""Shared fixtures: a scripted transport and a manually advanced clock."""

from collections import deque

import pytest

from paddle_tracker.config import LinkConfig, OrientationConfig, TrackerConfig
from paddle_tracker.transport import BleData, DeviceUpdate, ScanStatus, Transport

DEVICE_ID = "AA:BB:CC:DD:EE:01"
SERVICE_UUID = "e7f94bb9-9b07-5db7-8fbb-6b1cdbb5399e"
CHAR_UUID = "12340000-0000-0000-0000-000000000000"


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class FakeTransport(Transport):
    """
    Scripted transport. Queue results with the add_* helpers; each scan
    reports FINISHED once its queue is empty and finish_* was called,
    PENDING otherwise.
    """

    def __init__(self):
        self.devices = deque()
        self.services = deque()
        self.characteristics = deque()
        self.data = deque()
        self.error = "Ok"
        self.subscribe_result = True
        self.subscribe_error = "Ok"

        self.services_finished = False
        self.characteristics_finished = False

        self.calls = []
        self.device_scan_active = False

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    # scripting helpers
    def add_device(self, name, device_id=None):
        self.devices.append(DeviceUpdate(id=device_id or f"id-{name}", name=name))

    def add_frame(self, buf, device_id=DEVICE_ID):
        self.data.append(BleData(device_id=device_id, buf=bytes(buf)))

    # Transport interface
    def start_device_scan(self):
        self.calls.append(("start_device_scan",))
        self.device_scan_active = True

    def stop_device_scan(self):
        self.calls.append(("stop_device_scan",))
        self.device_scan_active = False

    def poll_device(self):
        if self.devices:
            return ScanStatus.AVAILABLE, self.devices.popleft()
        return ScanStatus.PENDING, None

    def scan_services(self, device_id):
        self.calls.append(("scan_services", device_id))

    def poll_service(self):
        if self.services:
            return ScanStatus.AVAILABLE, self.services.popleft()
        return (ScanStatus.FINISHED if self.services_finished else ScanStatus.PENDING), None

    def scan_characteristics(self, device_id, service_id):
        self.calls.append(("scan_characteristics", device_id, service_id))

    def poll_characteristic(self):
        if self.characteristics:
            return ScanStatus.AVAILABLE, self.characteristics.popleft()
        return (ScanStatus.FINISHED if self.characteristics_finished else ScanStatus.PENDING), None

    def subscribe_characteristic(self, device_id, service_id, char_uuid, block=False):
        self.calls.append(("subscribe", device_id, service_id, char_uuid))
        self.error = self.subscribe_error
        return self.subscribe_result

    def get_error(self):
        return self.error

    def poll_data(self):
        if self.data:
            return self.data.popleft()
        return None

    def quit(self):
        self.calls.append(("quit",))
        self.device_scan_active = False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def link_config():
    return LinkConfig(
        device_names=("Paddle 1", "Arduino"),
        service_uuid=SERVICE_UUID,
        characteristic_uuid=CHAR_UUID,
        scan_timeout=30.0,
        max_scan_retries=3,
        packet_timeout=5.0,
    )


@pytest.fixture
def orientation_config():
    # Identity mounting keeps test vectors readable
    return OrientationConfig(axis_signs=(1.0, 1.0, 1.0))


@pytest.fixture
def tracker_config(link_config, orientation_config):
    return TrackerConfig(link=link_config, orientation=orientation_config)
