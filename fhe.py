"""
Encryption runtime boundary.

The vault only ever sees ciphertext *handles*. Validating a submitted handle
and adding two handles together are delegated to whatever implements
:class:`CiphertextAlgebra`. :class:`LocalCoprocessor` is the in-process
reference runtime used by the local stack and the tests.
"""
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import CIPHERTEXT_BITS
from crypto import aesgcm_encrypt, aesgcm_decrypt, random_key32
from errors import CiphertextUnavailable, InvalidProof
from models import CiphertextValue, CoprocessorKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatedCiphertext:
    handle: str
    bits: int = CIPHERTEXT_BITS


@dataclass(frozen=True)
class EncryptedInput:
    """What a client submits: the handle plus the proof that it may be used."""
    handle: str
    proof: str


class CiphertextAlgebra(Protocol):
    def ingest(self, handle: str, proof: str, *, submitter: str,
               bits: int = CIPHERTEXT_BITS) -> ValidatedCiphertext:
        """Validate an externally supplied ciphertext; raise InvalidProof if it does not check out."""
        ...

    def add(self, a: ValidatedCiphertext, b: ValidatedCiphertext) -> ValidatedCiphertext:
        """Homomorphic addition, closed over the operands' bit width."""
        ...


def _proof_message(handle: str, submitter: str, bits: int) -> bytes:
    return f"{handle}|{submitter}|{bits}".encode("utf-8")


# handle -> (bits, nonce, ciphertext)
StoredValue = Tuple[int, bytes, bytes]


class MemoryValueStore:
    """Values for the lifetime of the process (tests, the in-memory demo)."""

    def __init__(self):
        self._values: Dict[str, StoredValue] = {}
        self._lock = threading.Lock()

    def put(self, handle: str, value: StoredValue) -> None:
        with self._lock:
            self._values[handle] = value

    def get(self, handle: str) -> Optional[StoredValue]:
        with self._lock:
            return self._values.get(handle)


class SqlValueStore:
    """Values and key material in the coprocessor's own database, so handles survive restarts."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._sessions = session_factory

    def put(self, handle: str, value: StoredValue) -> None:
        bits, nonce, ct = value
        with self._sessions() as db:
            db.add(CiphertextValue(handle=handle, bits=bits, nonce=nonce, ciphertext=ct))
            db.commit()

    def get(self, handle: str) -> Optional[StoredValue]:
        with self._sessions() as db:
            row = db.get(CiphertextValue, handle)
            return (row.bits, row.nonce, row.ciphertext) if row else None

    def load_keys(self) -> Tuple[SigningKey, bytes]:
        """The coprocessor's keys, generated and stored on first use."""
        with self._sessions() as db:
            row = db.get(CoprocessorKey, 1)
            if row is None:
                db.add(CoprocessorKey(id=1, signing_seed=bytes(SigningKey.generate()), data_key=random_key32()))
                try:
                    db.commit()
                    logger.info("Generated coprocessor keys")
                except IntegrityError:
                    # another process got there first
                    db.rollback()
                row = db.get(CoprocessorKey, 1)
            return SigningKey(row.signing_seed), row.data_key


class LocalCoprocessor:
    """
    Reference runtime. Values live only inside the coprocessor, AES-GCM sealed
    under its own key with the handle as AAD. Input proofs are Ed25519
    signatures binding a handle to the identity allowed to submit it.
    """

    def __init__(self, signing_key: SigningKey = None, data_key: bytes = None, store=None):
        self._signing_key = signing_key or SigningKey.generate()
        self._verify_key = self._signing_key.verify_key
        self._data_key = data_key or random_key32()
        self._store_backend = store or MemoryValueStore()

    @classmethod
    def persistent(cls, session_factory: Callable[[], Session]) -> "LocalCoprocessor":
        store = SqlValueStore(session_factory)
        signing_key, data_key = store.load_keys()
        return cls(signing_key, data_key, store)

    # ---------- client side ----------
    def encrypt_input(self, value: int, submitter: str, bits: int = CIPHERTEXT_BITS) -> EncryptedInput:
        if not 0 <= value < 2 ** bits:
            raise ValueError(f"value {value} does not fit in {bits} bits")
        handle = self._store(value, bits)
        signed = self._signing_key.sign(_proof_message(handle, submitter, bits))
        return EncryptedInput(handle=handle, proof="0x" + signed.signature.hex())

    # ---------- CiphertextAlgebra ----------
    def ingest(self, handle: str, proof: str, *, submitter: str,
               bits: int = CIPHERTEXT_BITS) -> ValidatedCiphertext:
        try:
            signature = bytes.fromhex(proof[2:] if proof.startswith("0x") else proof)
            self._verify_key.verify(_proof_message(handle, submitter, bits), signature)
        except (ValueError, BadSignatureError):
            logger.warning("Rejected input proof for handle %s from %s", handle, submitter)
            raise InvalidProof("Input proof is not valid for this handle and submitter",
                               {"handle": handle, "submitter": submitter})
        stored = self._store_backend.get(handle)
        if stored is None or stored[0] != bits:
            raise InvalidProof("Unknown ciphertext handle for the stated bit width",
                               {"handle": handle, "bits": bits})
        return ValidatedCiphertext(handle=handle, bits=bits)

    def add(self, a: ValidatedCiphertext, b: ValidatedCiphertext) -> ValidatedCiphertext:
        if a.bits != b.bits:
            raise ValueError("operands have different bit widths")
        total = (self._load(a.handle) + self._load(b.handle)) % (2 ** a.bits)
        return ValidatedCiphertext(handle=self._store(total, a.bits), bits=a.bits)

    # ---------- debugger ----------
    def reveal(self, handle: str) -> int:
        """Plaintext of a handle. Only the local gateway and tests call this."""
        return self._load(handle)

    # ---------- internals ----------
    def _store(self, value: int, bits: int) -> str:
        handle = "0x" + os.urandom(32).hex()
        width = (bits + 7) // 8
        nonce, ct = aesgcm_encrypt(self._data_key, value.to_bytes(width, "big"), aad=handle.encode())
        self._store_backend.put(handle, (bits, nonce, ct))
        return handle

    def _load(self, handle: str) -> int:
        stored = self._store_backend.get(handle)
        if stored is None:
            logger.error("Coprocessor has no value for stored handle %s", handle)
            raise CiphertextUnavailable("Ciphertext handle is unknown to the encryption runtime",
                                        {"handle": handle})
        _, nonce, ct = stored
        return int.from_bytes(aesgcm_decrypt(self._data_key, nonce, ct, aad=handle.encode()), "big")
