"""
Paddle Tracker
Tick driver tying link acquisition, decoding and orientation fusion together

Usage:
    transport = BleakTransport()
    tracker = PaddleTracker(transport)
    await tracker.run()

or, from a host loop that already ticks:
    tracker.start()
    while True:
        tracker.tick()
        u = tracker.position()

Decoded samples go through a queue between the link and the engine, so the
polling cadence of the link is independent of the fusion cadence.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np

from .config import TrackerConfig
from .link import LinkAcquisition
from .orientation import OrientationEngine
from .packet import ImuSample, PacketDecoder, Vector3
from .position import PositionMapper
from .transport import Transport

logger = logging.getLogger(__name__)

SampleListener = Callable[[str, Vector3, Vector3], None]


class PaddleTracker:
    """
    Owns one link and the orientation state of every source.

    All state is touched only from tick(); there are no threads.
    """

    def __init__(
            self,
            transport: Transport,
            config: Optional[TrackerConfig] = None,
            clock: Callable[[], float] = time.monotonic
    ):
        self.transport = transport
        self.config = config if config else TrackerConfig()
        self.clock = clock

        self.decoder = PacketDecoder()
        self.link = LinkAcquisition(transport, self.config.link, self.decoder, clock)
        self.mapper = PositionMapper(self.config.position)
        self.engine = OrientationEngine(self.config.orientation, self.mapper, clock)

        self.sample_listeners: List[SampleListener] = []
        self.should_run = False

        self._queue: Deque[Tuple[float, ImuSample]] = deque()
        self._tick_time: Optional[float] = None
        self._last_tick: Optional[float] = None

        self.link.add_sample_handler(self._enqueue)

    @property
    def source_id(self) -> str:
        return self.link.source_id

    @property
    def status(self) -> str:
        return self.link.status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Begin acquisition (manual start: retry counter cleared)"""
        self.link.start_scan(reset_retries=True, now=self.clock())

    def restart(self):
        """Tear the link down and acquire again from scratch"""
        logger.info("Manual restart requested")
        self.link.shutdown()
        self.start()

    def shutdown(self):
        self.should_run = False
        self.link.shutdown()

    def tick(self, now: Optional[float] = None):
        """One cooperative step: poll the link, fuse queued samples, ease outputs"""
        if now is None:
            now = self.clock()
        frame_dt = 0.0 if self._last_tick is None else now - self._last_tick
        self._last_tick = now
        self._tick_time = now

        self.link.tick(now)

        while self._queue:
            arrived, sample = self._queue.popleft()
            self.engine.process(sample, arrived)

        self.engine.step(frame_dt, now)

    async def run(self, duration: Optional[float] = None):
        """
        Tick on the running asyncio loop until shutdown() or duration elapses.

        Args:
            duration: Optional run time in seconds
        """
        self.should_run = True
        started = self.clock()
        self.start()

        try:
            while self.should_run:
                self.tick()
                if duration is not None and self.clock() - started >= duration:
                    break
                await asyncio.sleep(self.config.tick_interval)
        finally:
            self.should_run = False
            self.link.shutdown()

    def _enqueue(self, sample: ImuSample):
        arrived = self._tick_time if self._tick_time is not None else self.clock()
        self._queue.append((arrived, sample))

        for listener in self.sample_listeners:
            try:
                listener(sample.source_id, sample.accel, sample.gyro)
            except Exception as e:
                logger.error(f"Sample listener failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def orientation(self, source_id: Optional[str] = None) -> np.ndarray:
        return self.engine.orientation(source_id or self.source_id)

    def position(self, source_id: Optional[str] = None) -> float:
        return self.engine.position(source_id or self.source_id)

    def has_valid_data(self, source_id: Optional[str] = None) -> bool:
        return self.engine.has_valid_data(source_id or self.source_id)

    def request_calibration(self, source_id: Optional[str] = None) -> bool:
        return self.engine.request_calibration(source_id or self.source_id, self.clock())

    def get_status(self) -> dict:
        return {
            'link': self.link.get_status(),
            'sources': self.engine.get_status(),
        }

    def __repr__(self):
        return f"<PaddleTracker(source={self.source_id}, phase={self.link.phase.value})>"
