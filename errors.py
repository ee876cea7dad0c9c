"""
Error taxonomy for the vault.

Every failure carries a machine-readable kind plus the identifier it is
about, so callers can tell "not authorized" from "no such record" from
"the gateway rejected your callback identity".
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    UNAUTHORIZED_GATEWAY = "UNAUTHORIZED_GATEWAY"
    NOT_FOUND = "NOT_FOUND"
    INVALID_PROOF = "INVALID_PROOF"
    CIPHERTEXT_UNAVAILABLE = "CIPHERTEXT_UNAVAILABLE"


class VaultError(Exception):
    """Base class; subclasses pin ``kind`` and the HTTP status."""
    kind: ErrorKind
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class Unauthorized(VaultError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 403


class UnauthorizedGateway(VaultError):
    kind = ErrorKind.UNAUTHORIZED_GATEWAY
    status_code = 403


class NotFound(VaultError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class InvalidProof(VaultError):
    """Raised by the encryption runtime when a submitted ciphertext fails validation."""
    kind = ErrorKind.INVALID_PROOF
    status_code = 422


class CiphertextUnavailable(VaultError):
    """A handle the vault stored earlier is unknown to the encryption runtime (its state was lost)."""
    kind = ErrorKind.CIPHERTEXT_UNAVAILABLE
    status_code = 503


# Factories so the same failure always reads the same way
def record_not_found(record_id: int) -> NotFound:
    return NotFound(f"Record {record_id} not found", {"record_id": record_id})


def request_not_found(request_id: int, status: str = "unknown") -> NotFound:
    return NotFound(
        f"Decryption request {request_id} is not pending ({status})",
        {"request_id": request_id, "status": status},
    )


def not_authorized(caller: str, record_id: Optional[int] = None, owner: Optional[str] = None) -> Unauthorized:
    details: Dict[str, Any] = {"caller": caller}
    if record_id is not None:
        details["record_id"] = record_id
    if owner is not None:
        details["owner"] = owner
    return Unauthorized(f"{caller} is not authorized", details)
