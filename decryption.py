"""
Decrypt-by-oracle protocol.

A decryption is a correlation-table round trip: ``request_decrypt`` hands the
record's risk ciphertext to the oracle gateway and remembers
``request_id -> (record, requester)``; later the gateway calls
``on_decrypted`` and the entry is consumed exactly once. The plaintext is
only ever released as a :class:`events.RiskDecrypted` notification, never
written back onto the record.

There is no timeout and no cancellation: a request the oracle never answers
stays pending.
"""
import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import DISCLOSURE_MAX_SLOTS, DISCLOSURE_TTL_SEC
from errors import UnauthorizedGateway, not_authorized, request_not_found
from events import DecryptionRequested, GatewayUpdated, RiskDecrypted, list_audit
from models import DecryptionRequest, REQUEST_FULFILLED, REQUEST_PENDING
from records import get_record, require_access

logger = logging.getLogger(__name__)


class OracleGateway(Protocol):
    def submit_decrypt_request(self, handle: str) -> int:
        """Queue ``handle`` for out-of-band decryption and return the gateway's request id."""
        ...


class DecryptionCoordinator:
    def __init__(self, gateway: OracleGateway, gateway_identity: str):
        self._gateway = gateway
        self.configured_gateway = gateway_identity

    def trusted_gateway(self, db: Session) -> str:
        """
        The identity allowed to fulfill requests: the latest audited
        ``GatewayUpdated`` change, or the configured identity if there is none.
        Read from the database every time, so a change committed by another
        process takes effect immediately.
        """
        latest = list_audit(db, GatewayUpdated.kind, limit=1)
        return latest[0].payload["current"] if latest else self.configured_gateway

    def request_decrypt(self, db: Session, *, caller: str, record_id: int) -> Tuple[DecryptionRequest, DecryptionRequested]:
        rec = get_record(db, record_id)
        require_access(db, rec, caller)

        request_id = self._gateway.submit_decrypt_request(rec.risk_handle)
        if db.get(DecryptionRequest, request_id) is not None:
            raise RuntimeError(f"Gateway reused request id {request_id}")

        req = DecryptionRequest(
            request_id=request_id,
            record_id=rec.id,
            requester=caller,
            handle=rec.risk_handle,
            status=REQUEST_PENDING,
        )
        db.add(req)
        db.flush()
        return req, DecryptionRequested(request_id=request_id, record_id=rec.id, requester=caller)

    def on_decrypted(self, db: Session, *, caller: str, request_id: int, plaintext: int) -> RiskDecrypted:
        # origin first, so an untrusted caller learns nothing about request ids
        if caller != self.trusted_gateway(db):
            logger.warning("Rejected decryption callback for %s from %s", request_id, caller)
            raise UnauthorizedGateway(
                f"{caller} is not the configured gateway",
                {"caller": caller, "request_id": request_id},
            )

        req = db.get(DecryptionRequest, request_id)
        if req is None:
            logger.warning("Ignoring callback for unknown request %s", request_id)
            raise request_not_found(request_id)

        # conditional update keeps fulfillment at-most-once even across sessions
        updated = (
            db.query(DecryptionRequest)
            .filter_by(request_id=request_id, status=REQUEST_PENDING)
            .update({"status": REQUEST_FULFILLED, "fulfilled_at": datetime.utcnow()},
                    synchronize_session="fetch")
        )
        if not updated:
            logger.warning("Ignoring repeated callback for request %s", request_id)
            raise request_not_found(request_id, REQUEST_FULFILLED)

        return RiskDecrypted(
            request_id=request_id,
            record_id=req.record_id,
            requester=req.requester,
            plaintext=plaintext,
        )

    def get_request(self, db: Session, request_id: int) -> DecryptionRequest:
        req = db.get(DecryptionRequest, request_id)
        if req is None:
            raise request_not_found(request_id)
        return req

    def pending_requests(self, db: Session) -> List[DecryptionRequest]:
        return (
            db.query(DecryptionRequest)
            .filter_by(status=REQUEST_PENDING)
            .order_by(DecryptionRequest.requested_at)
            .all()
        )

    def last_request_id(self, db: Session) -> int:
        return db.query(func.max(DecryptionRequest.request_id)).scalar() or 0


class _Slot:
    def __init__(self, requester: str):
        self.requester = requester
        self.ready = threading.Event()
        self.notification: Optional[RiskDecrypted] = None
        self.delivered_at: Optional[float] = None
        self.waiters = 0


class DisclosureInbox:
    """
    One-shot delivery of RiskDecrypted notifications to whoever asked for them.
    Subscribe an instance to the event bus; it ignores other notifications.

    Delivered slots that nobody collects are dropped after ``ttl`` seconds, and
    the inbox never holds more than ``max_slots`` entries. A dropped disclosure
    is still in the audit trail, sealed to the requester's account key.
    """

    def __init__(self, max_slots: int = DISCLOSURE_MAX_SLOTS, ttl: float = DISCLOSURE_TTL_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.max_slots = max_slots
        self.ttl = ttl
        self._clock = clock
        self._slots: "OrderedDict[int, _Slot]" = OrderedDict()
        self._lock = threading.Lock()

    def open(self, request_id: int, requester: str) -> None:
        with self._lock:
            self._slots.setdefault(request_id, _Slot(requester))
            self._prune()

    def __contains__(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __call__(self, event) -> None:
        if not isinstance(event, RiskDecrypted):
            return
        with self._lock:
            slot = self._slots.setdefault(event.request_id, _Slot(event.requester))
            slot.notification = event
            slot.delivered_at = self._clock()
            slot.ready.set()
            self._prune()

    def wait(self, request_id: int, caller: str, timeout: Optional[float] = None) -> Optional[RiskDecrypted]:
        """Block until the disclosure arrives; None on timeout. Consumes the slot."""
        with self._lock:
            slot = self._slots.get(request_id)
            if slot is None:
                raise request_not_found(request_id)
            if slot.requester != caller:
                raise not_authorized(caller)
            slot.waiters += 1
        try:
            if not slot.ready.wait(timeout):
                return None
        finally:
            with self._lock:
                slot.waiters -= 1
        with self._lock:
            if self._slots.get(request_id) is slot:
                del self._slots[request_id]
        return slot.notification

    def _prune(self) -> None:
        # caller holds self._lock
        now = self._clock()
        for request_id, slot in list(self._slots.items()):
            if slot.delivered_at is not None and now - slot.delivered_at >= self.ttl:
                del self._slots[request_id]
        # over the cap: oldest delivered first, then oldest nobody is waiting on
        for delivered_only in (True, False):
            for request_id, slot in list(self._slots.items()):
                if len(self._slots) <= self.max_slots:
                    return
                if delivered_only and slot.delivered_at is None:
                    continue
                if slot.waiters:
                    continue
                del self._slots[request_id]
                logger.info("Dropped uncollected disclosure slot for request %s", request_id)
