"""
Polled BLE transport interface

The link state machine never blocks: every call below returns immediately
and scan results are pulled one at a time with the ``poll_*`` methods,
which report whether a result is available, the scan is still pending, or
the scan has finished.
"""

import abc
import enum
from dataclasses import dataclass
from typing import Optional, Tuple


class ScanStatus(enum.Enum):
    PENDING = 0
    AVAILABLE = 1
    FINISHED = 2


@dataclass(frozen=True)
class DeviceUpdate:
    """One advertisement seen during a device scan"""
    id: str
    name: str = ""


@dataclass(frozen=True)
class BleData:
    """One notification payload received from a subscribed characteristic"""
    device_id: str
    buf: bytes

    @property
    def size(self) -> int:
        return len(self.buf)


# Result of a poll_* call: (status, payload). Payload is None unless AVAILABLE.
DevicePoll = Tuple[ScanStatus, Optional[DeviceUpdate]]
UuidPoll = Tuple[ScanStatus, Optional[str]]


class Transport(abc.ABC):
    """Non-blocking radio interface driven from the tracker tick"""

    @abc.abstractmethod
    def start_device_scan(self) -> None:
        ...

    @abc.abstractmethod
    def stop_device_scan(self) -> None:
        ...

    @abc.abstractmethod
    def poll_device(self) -> DevicePoll:
        ...

    @abc.abstractmethod
    def scan_services(self, device_id: str) -> None:
        ...

    @abc.abstractmethod
    def poll_service(self) -> UuidPoll:
        ...

    @abc.abstractmethod
    def scan_characteristics(self, device_id: str, service_id: str) -> None:
        ...

    @abc.abstractmethod
    def poll_characteristic(self) -> UuidPoll:
        ...

    @abc.abstractmethod
    def subscribe_characteristic(self, device_id: str, service_id: str,
                                 char_uuid: str, block: bool = False) -> bool:
        """
        Request notifications from a characteristic.

        Returns:
            True if the request was accepted. Acceptance does not mean data
            will flow; the first received frame is the real confirmation.
        """

    @abc.abstractmethod
    def get_error(self) -> str:
        """Most recent transport error text ("Ok" when there is none)"""

    @abc.abstractmethod
    def poll_data(self) -> Optional[BleData]:
        """Pop one received frame, or None when nothing is buffered"""

    @abc.abstractmethod
    def quit(self) -> None:
        """Drop every scan and connection. Must be safe to call repeatedly."""
