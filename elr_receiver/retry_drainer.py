"""
Retry Drainer: periodic redelivery of queued payloads.

Each firing handles at most one queue entry. A persistently failing payload
goes back to the tail through the client's failure path, so it is retried
once per pass through the queue with no backoff and no attempt limit.
"""

import logging
import threading
import time
from enum import Enum
from typing import Optional

from .clients.registry_client import RegistryClient
from .exceptions import MalformedQueueEntryError
from .retry_queue import RetryQueue

logger = logging.getLogger("elr-receiver")

DEFAULT_INITIAL_DELAY = 20.0
DEFAULT_INTERVAL = 10.0


class DrainResult(str, Enum):
    EMPTY = "empty"
    DELIVERED = "delivered"
    REQUEUED = "requeued"
    DROPPED = "dropped"


class RetryDrainer:
    def __init__(
        self,
        queue: RetryQueue,
        client: RegistryClient,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        interval: float = DEFAULT_INTERVAL,
    ):
        self.queue = queue
        self.client = client
        self.initial_delay = initial_delay
        self.interval = interval

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def drain(self) -> DrainResult:
        """Remove the head entry and resubmit it once."""
        payload = self.queue.dequeue_one()
        if payload is None:
            return DrainResult.EMPTY

        try:
            outcome = self.client.submit_serialized(payload)
        except MalformedQueueEntryError as e:
            logger.error(f"[DRAIN] Dropping entry: {e}")
            return DrainResult.DROPPED

        if outcome.accepted:
            logger.info(f"[DRAIN] Redelivered queued payload ({self.queue.size()} left)")
            return DrainResult.DELIVERED

        logger.warning(f"[DRAIN] Redelivery failed, payload back at the tail: {outcome.message}")
        return DrainResult.REQUEUED

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="elr-retry-drainer", daemon=True)
        self._thread.start()
        logger.info(f"[DRAIN] Started (first run in {self.initial_delay}s, then every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[DRAIN] Stopped")

    def _run(self) -> None:
        # Fixed rate: each firing is due one interval after the previous one was due.
        next_run = time.monotonic() + self.initial_delay
        while not self._stop.wait(max(0.0, next_run - time.monotonic())):
            try:
                self.drain()
            except Exception as e:
                # Never let one bad firing end the thread.
                logger.exception(f"[DRAIN] Unexpected error: {e}")
            next_run += self.interval
            if next_run < time.monotonic():
                # A drain outlasted its period; skip the missed firings.
                next_run = time.monotonic()
