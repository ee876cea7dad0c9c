"""
HealthVault: the single entry point that ties the ledger, the record store
and the decryption coordinator together.

Every mutating call runs in its own transaction under one process-wide lock,
so mutations are totally ordered and either fully applied or not at all.
Reads open a fresh session and see the latest committed state without
taking the lock.
"""
import base64
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import access
import records
from config import ADMIN_IDENTITY, GATEWAY_IDENTITY
from decryption import DecryptionCoordinator, DisclosureInbox, OracleGateway
from errors import not_authorized, request_not_found
from events import EventBus, GatewayUpdated, RiskDecrypted, list_audit
from fhe import CiphertextAlgebra, LocalCoprocessor
from gateway import LocalGateway
from models import AuditEvent, REQUEST_PENDING
from records import RecordView

logger = logging.getLogger(__name__)


class _Tx:
    def __init__(self, db: Session, bus: EventBus):
        self.db = db
        self._bus = bus
        self.emitted = []

    def emit(self, event) -> None:
        self._bus.persist(self.db, event)
        self.emitted.append(event)


class HealthVault:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        runtime: CiphertextAlgebra,
        gateway: OracleGateway,
        *,
        gateway_identity: str = GATEWAY_IDENTITY,
        admin_identity: str = ADMIN_IDENTITY,
        bus: Optional[EventBus] = None,
    ):
        self._sessions = session_factory
        self.runtime = runtime
        self.bus = bus or EventBus()
        self.coordinator = DecryptionCoordinator(gateway, gateway_identity)
        self.inbox = DisclosureInbox()
        self.bus.subscribe(self.inbox)
        self.admin_identity = admin_identity
        self._lock = threading.RLock()

    # ---------- plumbing ----------
    @contextmanager
    def _transaction(self):
        with self._lock:
            db = self._sessions()
            tx = _Tx(db, self.bus)
            try:
                yield tx
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
            # still under the lock: subscribers see notifications in commit order
            self.bus.publish(tx.emitted)

    @contextmanager
    def _snapshot(self):
        db = self._sessions()
        try:
            yield db
        finally:
            db.close()

    # ---------- access control ledger ----------
    def grant_access(self, caller: str, grantee: str, enabled: bool, owner: Optional[str] = None) -> None:
        with self._transaction() as tx:
            tx.emit(access.grant(tx.db, caller=caller, owner=owner or caller,
                                 grantee=grantee, enabled=enabled))

    def is_granted(self, owner: str, grantee: str) -> bool:
        with self._snapshot() as db:
            return access.is_granted(db, owner, grantee)

    def list_grants(self, owner: str) -> Dict[str, bool]:
        with self._snapshot() as db:
            return {g.grantee: g.enabled for g in access.grants_for(db, owner)}

    # ---------- record store ----------
    def create_record(self, caller: str, cid: str, allergy_handle: str, allergy_proof: str,
                      risk_handle: str, risk_proof: str) -> int:
        with self._transaction() as tx:
            rec, event = records.create_record(
                tx.db, self.runtime, caller=caller, cid=cid,
                allergy_handle=allergy_handle, allergy_proof=allergy_proof,
                risk_handle=risk_handle, risk_proof=risk_proof,
            )
            tx.emit(event)
            return rec.id

    def add_risk_delta(self, caller: str, record_id: int, delta_handle: str, delta_proof: str) -> None:
        with self._transaction() as tx:
            _, event = records.add_risk_delta(
                tx.db, self.runtime, caller=caller, record_id=record_id,
                delta_handle=delta_handle, delta_proof=delta_proof,
            )
            tx.emit(event)

    def get_record(self, record_id: int) -> RecordView:
        with self._snapshot() as db:
            return RecordView.from_model(records.get_record(db, record_id))

    def list_records(self, owner: Optional[str] = None) -> List[RecordView]:
        with self._snapshot() as db:
            return [RecordView.from_model(r) for r in records.list_records(db, owner)]

    # ---------- decryption ----------
    def request_risk_decrypt(self, caller: str, record_id: int) -> int:
        with self._transaction() as tx:
            req, event = self.coordinator.request_decrypt(tx.db, caller=caller, record_id=record_id)
            tx.emit(event)
            request_id = req.request_id
        self.inbox.open(request_id, caller)
        return request_id

    def on_risk_decrypted(self, caller: str, request_id: int, plaintext: int) -> RiskDecrypted:
        with self._transaction() as tx:
            event = self.coordinator.on_decrypted(tx.db, caller=caller, request_id=request_id,
                                                  plaintext=plaintext)
            tx.emit(event)
            return event

    def wait_for_disclosure(self, caller: str, request_id: int,
                            timeout: Optional[float] = None) -> Optional[RiskDecrypted]:
        if request_id not in self.inbox:
            with self._snapshot() as db:
                req = self.coordinator.get_request(db, request_id)
                requester, status = req.requester, req.status
            if requester != caller:
                raise not_authorized(caller)
            if status != REQUEST_PENDING:
                # already handed out; the sealed copy in the audit trail remains
                raise request_not_found(request_id, status)
            self.inbox.open(request_id, requester)
        return self.inbox.wait(request_id, caller, timeout)

    def get_decryption_request(self, caller: str, request_id: int) -> dict:
        with self._snapshot() as db:
            req = self.coordinator.get_request(db, request_id)
            if caller not in (req.requester, req.record.owner):
                raise not_authorized(caller, record_id=req.record_id)
            return req.to_dict()

    def pending_decryptions(self) -> List[dict]:
        with self._snapshot() as db:
            return [r.to_dict() for r in self.coordinator.pending_requests(db)]

    def sealed_disclosure(self, caller: str, request_id: int) -> bytes:
        """The audit trail's sealed plaintext for ``request_id``, for its requester only."""
        with self._snapshot() as db:
            req = self.coordinator.get_request(db, request_id)
            if req.requester != caller:
                raise not_authorized(caller, record_id=req.record_id)
            rows = db.query(AuditEvent).filter_by(kind=RiskDecrypted.kind).all()
            for row in rows:
                if row.payload.get("request_id") == request_id and "sealed_plaintext" in row.payload:
                    return base64.b64decode(row.payload["sealed_plaintext"])
        raise request_not_found(request_id, req.status)

    # ---------- administration ----------
    @property
    def gateway_identity(self) -> str:
        with self._snapshot() as db:
            return self.coordinator.trusted_gateway(db)

    def set_gateway_identity(self, caller: str, identity: str) -> None:
        """Audited change of the trusted oracle identity; effective for every vault on this database."""
        if caller != self.admin_identity:
            logger.warning("%s tried to change the gateway identity", caller)
            raise not_authorized(caller)
        with self._transaction() as tx:
            previous = self.coordinator.trusted_gateway(tx.db)
            tx.emit(GatewayUpdated(previous=previous, current=identity, changed_by=caller))

    def audit_trail(self, kind: Optional[str] = None, limit: int = 100) -> List[dict]:
        with self._snapshot() as db:
            return [
                {"id": e.id, "kind": e.kind, "payload": e.payload, "created_at": e.created_at}
                for e in list_audit(db, kind, limit)
            ]


def build_local_vault(session_factory: Callable[[], Session], *,
                      coprocessor: Optional[LocalCoprocessor] = None,
                      gateway_identity: str = GATEWAY_IDENTITY,
                      admin_identity: str = ADMIN_IDENTITY):
    """
    Vault wired to the in-process coprocessor and gateway. Returns (vault, coprocessor, gateway).

    Pass ``LocalCoprocessor.persistent(...)`` when the vault database outlives
    the process; the default coprocessor forgets its values on exit. Requests
    still pending in the vault are handed back to the gateway.
    """
    coprocessor = coprocessor or LocalCoprocessor()
    gateway = LocalGateway(coprocessor, identity=gateway_identity)
    vault = HealthVault(session_factory, coprocessor, gateway,
                        gateway_identity=gateway_identity, admin_identity=admin_identity)
    gateway.bind(vault.on_risk_decrypted)
    with session_factory() as db:
        gateway.restore({r.request_id: r.handle for r in vault.coordinator.pending_requests(db)},
                        vault.coordinator.last_request_id(db))
    return vault, coprocessor, gateway
