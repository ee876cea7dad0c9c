"""
Record store: creation, homomorphic risk updates and read-only lookups.

Ciphertexts pass through :class:`fhe.CiphertextAlgebra`; this module never
decrypts anything. Callers are expected to hold the vault's write lock around
the mutating functions (see vault.HealthVault).
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from access import is_authorized
from config import CIPHERTEXT_BITS
from errors import not_authorized, record_not_found
from events import RecordCreated, RiskDeltaApplied
from fhe import CiphertextAlgebra, ValidatedCiphertext
from models import HealthRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordView:
    """Read-only projection handed out by the vault. Handles alone disclose nothing."""
    id: int
    owner: str
    cid: str
    allergy_info: str
    risk_score: str
    created_at: datetime

    @classmethod
    def from_model(cls, rec: HealthRecord) -> "RecordView":
        return cls(
            id=rec.id,
            owner=rec.owner,
            cid=rec.cid,
            allergy_info=rec.allergy_handle,
            risk_score=rec.risk_handle,
            created_at=rec.created_at,
        )


def next_record_id(db: Session) -> int:
    # append-only table, ids start at 0
    current = db.query(func.max(HealthRecord.id)).scalar()
    return 0 if current is None else current + 1


def get_record(db: Session, record_id: int) -> HealthRecord:
    rec = db.get(HealthRecord, record_id)
    if rec is None:
        raise record_not_found(record_id)
    return rec


def list_records(db: Session, owner: Optional[str] = None) -> List[HealthRecord]:
    q = db.query(HealthRecord)
    if owner is not None:
        q = q.filter(HealthRecord.owner == owner)
    return q.order_by(HealthRecord.id).all()


def require_access(db: Session, rec: HealthRecord, caller: str) -> None:
    if not is_authorized(db, rec.owner, caller):
        logger.warning("Denied %s on record %s (owner %s)", caller, rec.id, rec.owner)
        raise not_authorized(caller, record_id=rec.id, owner=rec.owner)


def create_record(
    db: Session,
    runtime: CiphertextAlgebra,
    *,
    caller: str,
    cid: str,
    allergy_handle: str,
    allergy_proof: str,
    risk_handle: str,
    risk_proof: str,
) -> Tuple[HealthRecord, RecordCreated]:
    allergy = runtime.ingest(allergy_handle, allergy_proof, submitter=caller, bits=CIPHERTEXT_BITS)
    risk = runtime.ingest(risk_handle, risk_proof, submitter=caller, bits=CIPHERTEXT_BITS)

    now = datetime.utcnow()
    rec = HealthRecord(
        id=next_record_id(db),
        owner=caller,
        cid=cid,
        allergy_handle=allergy.handle,
        risk_handle=risk.handle,
        created_at=now,
        updated_at=now,
    )
    db.add(rec)
    db.flush()
    return rec, RecordCreated(record_id=rec.id, owner=rec.owner, cid=rec.cid)


def add_risk_delta(
    db: Session,
    runtime: CiphertextAlgebra,
    *,
    caller: str,
    record_id: int,
    delta_handle: str,
    delta_proof: str,
) -> Tuple[HealthRecord, RiskDeltaApplied]:
    """riskScore := riskScore (+) delta, entirely on ciphertexts."""
    rec = get_record(db, record_id)
    require_access(db, rec, caller)

    delta = runtime.ingest(delta_handle, delta_proof, submitter=caller, bits=CIPHERTEXT_BITS)
    current = ValidatedCiphertext(handle=rec.risk_handle, bits=CIPHERTEXT_BITS)
    rec.risk_handle = runtime.add(current, delta).handle
    rec.updated_at = datetime.utcnow()
    db.flush()
    return rec, RiskDeltaApplied(record_id=rec.id, caller=caller)
