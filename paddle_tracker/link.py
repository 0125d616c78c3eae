"""
Link Acquisition
Finds the paddle, its service and characteristic, subscribes, and keeps
watch over the data feed.

Phases:
    IDLE -> SCANNING_DEVICES -> SCANNING_SERVICES -> SCANNING_CHARACTERISTICS
         -> SUBSCRIBED -> (IDLE | ERROR)

Everything runs from tick(): results are drained from the transport until
it reports nothing more available, then control returns to the caller.
Timeouts are deadlines checked on each tick.

Retry policy:
- a scan stage that times out or fails is retried up to max_scan_retries
  times; the retry counter survives automatic retries and is cleared only
  by an explicit start_scan()
- retry exhaustion leaves the link in ERROR until the caller restarts it
- a subscription that goes silent for packet_timeout is torn down and
  acquisition starts over
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Set

from .config import LinkConfig
from .errors import FailureKind, LinkFailure
from .packet import ImuSample, PacketDecoder, RawFrame
from .transport import ScanStatus, Transport
from .uuids import normalize_uuid, same_uuid

logger = logging.getLogger(__name__)

# Transport error texts that mean a scan stage broke
SCAN_ERROR_MARKERS = (
    "scanning devices",
    "scanning services",
    "scanning characteristics",
)


class LinkPhase(enum.Enum):
    IDLE = "idle"
    SCANNING_DEVICES = "scanning_devices"
    SCANNING_SERVICES = "scanning_services"
    SCANNING_CHARACTERISTICS = "scanning_characteristics"
    SUBSCRIBED = "subscribed"
    ERROR = "error"


SCANNING_PHASES = frozenset({
    LinkPhase.SCANNING_DEVICES,
    LinkPhase.SCANNING_SERVICES,
    LinkPhase.SCANNING_CHARACTERISTICS,
})


class SubscriptionResult(enum.Enum):
    NONE = "none"
    AMBIGUOUS = "ambiguous"  # request accepted, no data yet
    CONFIRMED = "confirmed"  # first valid sample received
    FAILED = "failed"


def classify_subscription(accepted: bool, error_message: Optional[str]) -> SubscriptionResult:
    """
    Interpret a subscribe call.

    Backends report success inconsistently, so an affirmative return, an
    "ok" error text and an empty error text all count as accepted. The
    first valid sample is what confirms the subscription.
    """
    err = (error_message or "").strip().lower()
    if accepted or err == "ok" or not err:
        return SubscriptionResult.AMBIGUOUS
    return SubscriptionResult.FAILED


def is_scan_error(message: str) -> bool:
    text = message.lower()
    return any(marker in text for marker in SCAN_ERROR_MARKERS)


@dataclass
class LinkState:
    """Targets and discovered handles of the current acquisition attempt"""
    device_names: FrozenSet[str]
    service_uuid: str
    characteristic_uuid: str

    device_id: Optional[str] = None
    device_name: str = ""
    service_id: Optional[str] = None
    timeout_at: float = 0.0
    scan_retries: int = 0
    subscribed: bool = False
    subscription: SubscriptionResult = SubscriptionResult.NONE
    last_packet_time: float = 0.0

    def clear_handles(self):
        self.device_id = None
        self.device_name = ""
        self.service_id = None
        self.subscribed = False
        self.subscription = SubscriptionResult.NONE


class LinkAcquisition:
    """
    Tick-driven acquisition of one paddle over a polled transport.

    Decoded samples are handed to every registered sample handler.
    """

    def __init__(
            self,
            transport: Transport,
            config: Optional[LinkConfig] = None,
            decoder: Optional[PacketDecoder] = None,
            clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize link acquisition

        Args:
            transport: Polled BLE transport
            config: Link configuration
            decoder: Packet decoder (a fresh one if None)
            clock: Monotonic time source in seconds
        """
        self.transport = transport
        self.config = config if config else LinkConfig()
        self.decoder = decoder if decoder else PacketDecoder()
        self.clock = clock

        self.state = LinkState(
            device_names=frozenset(self.config.device_names),
            service_uuid=normalize_uuid(self.config.service_uuid),
            characteristic_uuid=normalize_uuid(self.config.characteristic_uuid),
        )
        self.phase = LinkPhase.IDLE
        self.last_failure: Optional[LinkFailure] = None
        self.last_error = "Ok"
        self.status = "Ready to connect"

        self.sample_handlers: List[Callable[[ImuSample], None]] = []
        self.status_handlers: List[Callable[[str], None]] = []

        # Stats
        self.restart_count = 0
        self.drained_frames = 0

        self._scanned_device_names: Set[str] = set()
        self._status_clear_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Public control
    # ------------------------------------------------------------------

    @property
    def source_id(self) -> str:
        return self.config.source_id

    @property
    def is_scanning(self) -> bool:
        return self.phase in SCANNING_PHASES

    @property
    def is_connected(self) -> bool:
        return self.phase is LinkPhase.SUBSCRIBED and self.state.subscribed

    def add_sample_handler(self, handler: Callable[[ImuSample], None]):
        self.sample_handlers.append(handler)

    def start_scan(self, reset_retries: bool = True, now: Optional[float] = None):
        """
        Start (or restart) acquisition from the device scan.

        Args:
            reset_retries: Clear the retry counter (manual restart)
            now: Current time (defaults to the link clock)
        """
        if self.phase is LinkPhase.SCANNING_DEVICES:
            return
        self._begin_device_scan(reset_retries, self._now(now))

    def shutdown(self):
        """Quiesce the transport and return to IDLE"""
        self._teardown()
        self._set_status("Disconnected")
        logger.info("Link shut down")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None):
        """Advance the state machine once. Never blocks."""
        now = self._now(now)

        if self.phase is LinkPhase.SCANNING_DEVICES:
            if self._tick_devices(now):
                return
        elif self.phase is LinkPhase.SCANNING_SERVICES:
            if self._tick_services(now):
                return
        elif self.phase is LinkPhase.SCANNING_CHARACTERISTICS:
            if self._tick_characteristics(now):
                return

        self._pump_data(now)

        if self._check_silence(now):
            return

        self._check_transport_error(now)

        if self._status_clear_at is not None and now >= self._status_clear_at:
            self._status_clear_at = None
            self._set_status("")

    def _tick_devices(self, now: float) -> bool:
        if now > self.state.timeout_at:
            if self.state.scan_retries < self.config.max_scan_retries:
                self.state.scan_retries += 1
                self.last_failure = LinkFailure(FailureKind.SCAN_TIMEOUT, "Device scan timeout")
                logger.warning(f"Device scan timed out, retry "
                               f"{self.state.scan_retries}/{self.config.max_scan_retries}")
                self._begin_device_scan(reset_retries=False, now=now)
                self._set_status(f"Retry {self.state.scan_retries}/{self.config.max_scan_retries}...")
            else:
                self._fail(FailureKind.SCAN_TIMEOUT, "Paddle not found. Try again.")
            return True

        while True:
            status, update = self.transport.poll_device()
            if status is not ScanStatus.AVAILABLE:
                break
            if update is None or not update.name:
                continue

            if update.name not in self._scanned_device_names:
                self._scanned_device_names.add(update.name)
                logger.debug(f"Found device: {update.name} ({update.id})")

            if update.name in self.state.device_names:
                self.transport.stop_device_scan()
                self.state.device_id = update.id
                self.state.device_name = update.name
                logger.info(f"Found {update.name} ({update.id})")
                self._set_status(f"Found {update.name}, searching for service…")
                self._begin_service_scan(now)
                return True

        return False

    def _tick_services(self, now: float) -> bool:
        if now > self.state.timeout_at:
            self._handle_scan_error(FailureKind.SERVICE_NOT_FOUND, "Service scan timeout", now)
            return True

        while True:
            status, uuid = self.transport.poll_service()
            if status is not ScanStatus.AVAILABLE:
                break
            logger.debug(f"Found service: {uuid}")

            if same_uuid(uuid, self.state.service_uuid):
                self.state.service_id = uuid
                logger.info(f"Found service {uuid}")
                self._set_status("Found service, searching for characteristic…")
                self._begin_characteristic_scan(now)
                return True

        if status is ScanStatus.FINISHED and self.state.service_id is None:
            self._handle_scan_error(FailureKind.SERVICE_NOT_FOUND, "Service not found on device", now)
            return True

        return False

    def _tick_characteristics(self, now: float) -> bool:
        if now > self.state.timeout_at:
            self._handle_scan_error(FailureKind.CHARACTERISTIC_NOT_FOUND,
                                    "Characteristic scan timeout", now)
            return True

        while True:
            status, uuid = self.transport.poll_characteristic()
            if status is not ScanStatus.AVAILABLE:
                break
            logger.debug(f"Found characteristic: {uuid}")

            if same_uuid(uuid, self.state.characteristic_uuid):
                self._subscribe(uuid, now)
                return True

        if status is ScanStatus.FINISHED:
            self._handle_scan_error(FailureKind.CHARACTERISTIC_NOT_FOUND,
                                    "Characteristic not found on device", now)
            return True

        return False

    def _subscribe(self, char_uuid: str, now: float):
        accepted = self.transport.subscribe_characteristic(
            self.state.device_id, self.state.service_id, char_uuid, False
        )
        err = self.transport.get_error()
        result = classify_subscription(accepted, err)

        self.phase = LinkPhase.SUBSCRIBED
        self.state.subscription = result
        self.state.last_packet_time = now

        if result is SubscriptionResult.AMBIGUOUS:
            self.last_failure = LinkFailure(FailureKind.SUBSCRIPTION_AMBIGUOUS,
                                            "Subscribed, waiting for first sample")
            logger.info(f"Subscribed to {char_uuid}, waiting for data")
            self._set_status("Waiting for data…")
        else:
            self.last_error = err
            self.last_failure = LinkFailure(FailureKind.SUBSCRIPTION_FAILED, err)
            logger.warning(f"Subscription failed: {err}")
            self._set_status(f"Subscription failed: {err}")

    def _pump_data(self, now: float):
        while True:
            data = self.transport.poll_data()
            if data is None:
                break
            if self.phase is not LinkPhase.SUBSCRIBED or data.device_id != self.state.device_id:
                continue

            sample = self.decoder.decode(RawFrame(self.source_id, data.buf))
            if sample is None:
                continue

            self.state.last_packet_time = now
            if not self.state.subscribed:
                self._confirm(now)
            self._emit(sample)

    def _confirm(self, now: float):
        self.state.subscribed = True
        self.state.subscription = SubscriptionResult.CONFIRMED
        self.state.scan_retries = 0
        self.last_error = "Ok"
        self.last_failure = None
        logger.info(f"Connected to {self.state.device_name}, receiving data")
        self._set_status("Connected! Receiving data...")
        self._status_clear_at = now + self.config.connected_message_duration

    def _emit(self, sample: ImuSample):
        for handler in self.sample_handlers:
            try:
                handler(sample)
            except Exception as e:
                logger.error(f"Sample handler failed: {e}", exc_info=True)

    def _check_silence(self, now: float) -> bool:
        if self.phase is not LinkPhase.SUBSCRIBED:
            return False
        if self.state.subscription is SubscriptionResult.FAILED:
            return False
        if now - self.state.last_packet_time <= self.config.packet_timeout:
            return False

        logger.warning("Data timeout, restarting BLE scan...")
        self.last_failure = LinkFailure(FailureKind.DATA_SILENCE_TIMEOUT,
                                        f"No data for {self.config.packet_timeout:.1f}s")
        self.restart_count += 1
        self._begin_device_scan(reset_retries=True, now=now)
        return True

    def _check_transport_error(self, now: float):
        msg = self.transport.get_error()
        if not msg or msg.strip().lower() == "ok" or msg == self.last_error:
            return

        logger.warning(f"[BLE] Error: {msg}")
        self.last_error = msg
        self.last_failure = LinkFailure(FailureKind.TRANSPORT_ERROR, msg)

        if is_scan_error(msg) and self.phase not in (LinkPhase.IDLE, LinkPhase.ERROR):
            self._handle_scan_error(FailureKind.TRANSPORT_ERROR, msg, now)
        else:
            self._set_status(f"Error: {msg}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _handle_scan_error(self, kind: FailureKind, message: str, now: float):
        if self.state.scan_retries < self.config.max_scan_retries:
            self.state.scan_retries += 1
            self.last_failure = LinkFailure(kind, message)
            logger.warning(f"{message}, retry {self.state.scan_retries}/{self.config.max_scan_retries}")
            self._begin_device_scan(reset_retries=False, now=now)
            self._set_status(f"Error: {message}. Retrying "
                             f"{self.state.scan_retries}/{self.config.max_scan_retries}...")
        else:
            self._fail(kind, message)

    def _fail(self, kind: FailureKind, message: str):
        self._teardown()
        self.phase = LinkPhase.ERROR
        self.last_failure = LinkFailure(kind, message, terminal=True)
        logger.error(f"Link acquisition failed: {message}")
        self._set_status(message)

    def _begin_device_scan(self, reset_retries: bool, now: float):
        self._teardown()

        if reset_retries:
            self.state.scan_retries = 0

        self._scanned_device_names.clear()
        self.phase = LinkPhase.SCANNING_DEVICES
        self.state.timeout_at = now + self.config.scan_timeout
        self.transport.start_device_scan()
        logger.info(f"Scanning for {', '.join(sorted(self.state.device_names))}")
        self._set_status("Scanning for paddle…")

    def _begin_service_scan(self, now: float):
        self.phase = LinkPhase.SCANNING_SERVICES
        self.state.timeout_at = now + self.config.scan_timeout
        self.transport.scan_services(self.state.device_id)

    def _begin_characteristic_scan(self, now: float):
        self.phase = LinkPhase.SCANNING_CHARACTERISTICS
        self.state.timeout_at = now + self.config.scan_timeout
        self.transport.scan_characteristics(self.state.device_id, self.state.service_id)

    def _teardown(self):
        """Stop scans, reset the transport and drop buffered frames"""
        if self.phase is LinkPhase.SCANNING_DEVICES:
            self.transport.stop_device_scan()
        self.transport.quit()

        while self.transport.poll_data() is not None:
            self.drained_frames += 1

        self.state.clear_handles()
        self._status_clear_at = None
        self.phase = LinkPhase.IDLE

    # ------------------------------------------------------------------

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _set_status(self, message: str):
        if message == self.status:
            return
        self.status = message
        if message:
            logger.debug(f"Status: {message}")
        for handler in self.status_handlers:
            handler(message)

    def get_status(self) -> dict:
        return {
            'phase': self.phase.value,
            'status': self.status,
            'device': self.state.device_name or None,
            'subscription': self.state.subscription.value,
            'scan_retries': self.state.scan_retries,
            'restarts': self.restart_count,
            'last_failure': self.last_failure.message if self.last_failure else None,
            **self.decoder.get_stats(),
        }

    def __repr__(self):
        return f"<LinkAcquisition(phase={self.phase.value}, device={self.state.device_name or None})>"
