"""
In-process oracle gateway for the local stack.

Queues decryption requests and answers them later, through the same
authenticated callback a remote oracle would use. It never calls back from
inside ``submit_decrypt_request``.
"""
import itertools
import logging
import threading
from typing import Callable, Dict, List, Optional

from config import GATEWAY_IDENTITY
from errors import CiphertextUnavailable, NotFound
from fhe import LocalCoprocessor

logger = logging.getLogger(__name__)

# (caller, request_id, plaintext) -> notification
Callback = Callable[[str, int, int], object]


class LocalGateway:
    def __init__(self, coprocessor: LocalCoprocessor, identity: str = GATEWAY_IDENTITY):
        self.identity = identity
        self._coprocessor = coprocessor
        self._ids = itertools.count(1)
        self._queue: Dict[int, str] = {}
        self._lock = threading.Lock()
        self._callback: Optional[Callback] = None

    def bind(self, callback: Callback) -> None:
        self._callback = callback

    def submit_decrypt_request(self, handle: str) -> int:
        with self._lock:
            request_id = next(self._ids)
            self._queue[request_id] = handle
        logger.info("Gateway queued decryption request %s", request_id)
        return request_id

    def restore(self, queued: Dict[int, str], last_request_id: int) -> None:
        """Re-queue requests still pending in the vault and continue numbering after ``last_request_id``."""
        with self._lock:
            self._ids = itertools.count(last_request_id + 1)
            self._queue.update(queued)
        if queued:
            logger.info("Gateway resumed %d pending decryption request(s)", len(queued))

    def pending(self) -> List[int]:
        with self._lock:
            return sorted(self._queue)

    def fulfill(self, request_id: int, plaintext: int):
        if self._callback is None:
            raise RuntimeError("LocalGateway is not bound to a vault")
        result = self._callback(self.identity, request_id, plaintext)
        with self._lock:
            self._queue.pop(request_id, None)
        return result

    def fulfill_pending(self) -> list:
        """Decrypt every queued handle through the coprocessor and deliver the results."""
        with self._lock:
            queued = sorted(self._queue.items())
        delivered = []
        for request_id, handle in queued:
            try:
                delivered.append(self.fulfill(request_id, self._coprocessor.reveal(handle)))
            except NotFound:
                logger.warning("Dropping request %s, the vault no longer expects it", request_id)
                with self._lock:
                    self._queue.pop(request_id, None)
            except CiphertextUnavailable:
                logger.error("Cannot decrypt request %s, leaving it queued", request_id)
        return delivered
