"""
Notifications emitted by the vault, and the bus that records and delivers them.

Each notification is written to ``audit_events`` inside the transaction that
caused it, then handed to in-process subscribers once that transaction has
committed. Disclosed plaintexts never reach the audit table in the clear.
"""
import base64
import logging
from dataclasses import asdict, dataclass
from typing import Callable, ClassVar, Iterable, List, Optional

from sqlalchemy.orm import Session

from crypto import seal_value
from models import AuditEvent, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordCreated:
    kind: ClassVar[str] = "RecordCreated"
    record_id: int
    owner: str
    cid: str


@dataclass(frozen=True)
class AccessUpdated:
    kind: ClassVar[str] = "AccessUpdated"
    owner: str
    grantee: str
    enabled: bool


@dataclass(frozen=True)
class RiskDeltaApplied:
    kind: ClassVar[str] = "RiskDeltaApplied"
    record_id: int
    caller: str


@dataclass(frozen=True)
class DecryptionRequested:
    kind: ClassVar[str] = "DecryptionRequested"
    request_id: int
    record_id: int
    requester: str


@dataclass(frozen=True)
class RiskDecrypted:
    kind: ClassVar[str] = "RiskDecrypted"
    request_id: int
    record_id: int
    requester: str
    plaintext: int


@dataclass(frozen=True)
class GatewayUpdated:
    kind: ClassVar[str] = "GatewayUpdated"
    previous: str
    current: str
    changed_by: str


Subscriber = Callable[[object], None]


def audit_payload(db: Session, event) -> dict:
    payload = asdict(event)
    if isinstance(event, RiskDecrypted):
        # Only the requester can read the value back, and only if they hold a key
        del payload["plaintext"]
        requester = db.query(User).filter_by(username=event.requester).first()
        if requester is not None:
            sealed = seal_value(requester.public_key, event.plaintext)
            payload["sealed_plaintext"] = base64.b64encode(sealed).decode()
    return payload


class EventBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers.remove(callback)

    def persist(self, db: Session, event) -> AuditEvent:
        row = AuditEvent(kind=event.kind, payload=audit_payload(db, event))
        db.add(row)
        return row

    def publish(self, events: Iterable) -> None:
        for event in events:
            logger.info("%s %s", event.kind, _describe(event))
            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception:
                    # state is already committed; one bad subscriber must not starve the rest
                    logger.exception("Subscriber %r failed on %s", callback, event.kind)


def _describe(event) -> str:
    fields = asdict(event)
    fields.pop("plaintext", None)
    return " ".join(f"{k}={v}" for k, v in fields.items())


def list_audit(db: Session, kind: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
    q = db.query(AuditEvent)
    if kind:
        q = q.filter(AuditEvent.kind == kind)
    return q.order_by(AuditEvent.id.desc()).limit(limit).all()
