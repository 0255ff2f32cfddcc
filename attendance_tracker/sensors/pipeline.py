"""
Per-device sensor event pipeline.

Sensor callbacks only enqueue; a single worker drains the bounded queue and
runs each event through the FusionEngine to completion before taking the
next, so the engine never sees two events of the same device at once.
Subscribers receive every FusedPosition the engine produces.
"""

import logging
import threading
from queue import Empty, Full, Queue

from ..config import PipelineConfig
from ..errors import InvalidInputError
from ..models import GPSFix, InertialFrame

logger = logging.getLogger(__name__)


class DevicePipeline:
    """
    Bounded event queue feeding one FusionEngine.

    Args:
        engine (FusionEngine): Estimator for this device
        config (PipelineConfig): Queue size and worker poll timeout
        device_id (str): Label used in log messages
    """

    def __init__(self, engine, config=None, device_id='device'):
        self.engine = engine
        self.config = config or PipelineConfig()
        self.config.validate()
        self.device_id = device_id

        self.queue = Queue(maxsize=self.config.max_queue_size)
        self.subscribers = []
        self.stop_event = threading.Event()
        self.worker = None

        # Statistics
        self.submitted = 0
        self.dropped = 0
        self.processed = 0
        self.rejected = 0
        self.published = 0

    def subscribe(self, callback):
        """Register a callback receiving each FusedPosition (returns the callback)."""
        self.subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        if callback in self.subscribers:
            self.subscribers.remove(callback)

    def submit(self, event):
        """
        Enqueue a GPSFix or InertialFrame without blocking.

        Returns:
            bool: False if the queue was full and the event was dropped
        """
        try:
            self.queue.put_nowait(event)
        except Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("[%s] event queue full, %d events dropped", self.device_id, self.dropped)
            return False
        self.submitted += 1
        return True

    def process(self, event):
        """
        Run one event through the engine and publish the result.

        Returns:
            FusedPosition or None
        """
        try:
            if isinstance(event, GPSFix):
                position = self.engine.update_gps(event)
            elif isinstance(event, InertialFrame):
                position = self.engine.update_inertial(event)
            else:
                raise InvalidInputError(f"unsupported sensor event: {type(event).__name__}")
        except InvalidInputError as e:
            self.rejected += 1
            logger.warning("[%s] rejected event: %s", self.device_id, e)
            return None
        finally:
            self.processed += 1

        if position is not None:
            self.published += 1
            for callback in list(self.subscribers):
                callback(position)
        return position

    def drain(self, max_events=None):
        """
        Process queued events on the calling thread.

        Returns:
            list: FusedPositions produced, in order
        """
        positions = []
        count = 0
        while max_events is None or count < max_events:
            try:
                event = self.queue.get_nowait()
            except Empty:
                break
            try:
                position = self.process(event)
            finally:
                self.queue.task_done()
            count += 1
            if position is not None:
                positions.append(position)
        return positions

    def start(self):
        """Start the worker thread."""
        if self.worker is not None and self.worker.is_alive():
            return
        self.stop_event.clear()
        self.worker = threading.Thread(target=self.run, name=f"pipeline-{self.device_id}", daemon=True)
        self.worker.start()

    def run(self):
        """Worker loop - one event at a time until stopped"""
        while not self.stop_event.is_set():
            try:
                event = self.queue.get(timeout=self.config.poll_timeout)
            except Empty:
                continue
            try:
                self.process(event)
            except Exception:
                # Keep the device pipeline alive; a failing subscriber must not stop fusion
                logger.exception("[%s] error while processing event", self.device_id)
            finally:
                self.queue.task_done()

    def stop(self, timeout=1.0):
        self.stop_event.set()
        if self.worker is not None:
            self.worker.join(timeout=timeout)
            self.worker = None

    def get_health_status(self):
        return {
            'device_id': self.device_id,
            'running': self.worker is not None and self.worker.is_alive(),
            'queue_size': self.queue.qsize(),
            'submitted': self.submitted,
            'dropped': self.dropped,
            'processed': self.processed,
            'rejected': self.rejected,
            'published': self.published,
        }
