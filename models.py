from sqlalchemy import (
    Column, Integer, BigInteger, String, LargeBinary, DateTime, Boolean, ForeignKey, JSON, Enum,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from db import Base, CoprocessorBase

REQUEST_PENDING = "pending"
REQUEST_FULFILLED = "fulfilled"


class HealthRecord(Base):
    """
    One confidential record. Both numeric fields are ciphertext handles issued by
    the encryption runtime; the vault never holds their plaintext.
    """
    __tablename__ = "health_records"

    # Sequential from 0, assigned by records.create_record (append-only table)
    id = Column(Integer, primary_key=True, autoincrement=False)
    owner = Column(String, nullable=False, index=True)
    cid = Column(String, nullable=False)

    allergy_handle = Column(String, nullable=False)
    # Replaced in place by authorized homomorphic increments
    risk_handle = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    decryption_requests = relationship("DecryptionRequest", back_populates="record")


class AccessGrant(Base):
    """
    Owner -> grantee capability. Rows are only ever flipped, never deleted;
    a missing row means "not granted".
    """
    __tablename__ = "access_grants"

    id = Column(Integer, primary_key=True)
    owner = Column(String, nullable=False, index=True)
    grantee = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("owner", "grantee", name="uq_owner_grantee"),)


class DecryptionRequest(Base):
    __tablename__ = "decryption_requests"

    # Chosen by the oracle gateway, opaque to us
    request_id = Column(BigInteger, primary_key=True, autoincrement=False)
    record_id = Column(Integer, ForeignKey("health_records.id"), nullable=False)
    requester = Column(String, nullable=False)
    handle = Column(String, nullable=False)
    status = Column(Enum(REQUEST_PENDING, REQUEST_FULFILLED, name="request_status"),
                    nullable=False, default=REQUEST_PENDING)
    requested_at = Column(DateTime, default=datetime.utcnow)
    fulfilled_at = Column(DateTime, nullable=True)

    record = relationship("HealthRecord", back_populates="decryption_requests")

    def to_dict(self):
        return {
            "request_id": self.request_id,
            "record_id": self.record_id,
            "requester": self.requester,
            "status": self.status,
            "requested_at": self.requested_at,
            "fulfilled_at": self.fulfilled_at,
        }


class AuditEvent(Base):
    """Persisted copy of every notification, written in the same transaction as the change."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class User(Base):
    """API account. ``username`` is the caller identity used everywhere in the vault."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)

    # X25519: public clear; private encrypted with the account password
    public_key = Column(LargeBinary, nullable=False)
    enc_private_key = Column(LargeBinary, nullable=False)
    enc_private_key_nonce = Column(LargeBinary, nullable=False)
    enc_private_key_salt = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# Local coprocessor store (separate database) ----------------------------------
class CoprocessorKey(CoprocessorBase):
    """Single row: the coprocessor's Ed25519 signing seed and its value-sealing key."""
    __tablename__ = "coprocessor_keys"

    id = Column(Integer, primary_key=True)
    signing_seed = Column(LargeBinary, nullable=False)
    data_key = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class CiphertextValue(CoprocessorBase):
    __tablename__ = "ciphertext_values"

    handle = Column(String, primary_key=True)
    bits = Column(Integer, nullable=False)
    nonce = Column(LargeBinary, nullable=False)
    ciphertext = Column(LargeBinary, nullable=False)
