import logging
import time
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
import jwt

from accounts import AccountExists, authenticate, create_account, unlock_private_key
from config import (
    ACCESS_TOKEN_TTL_MIN, CIPHERTEXT_BITS, JWT_ALG, JWT_SECRET, LOCAL_STACK, LOG_LEVEL,
)
from crypto import open_sealed_value
from db import Base, CoprocessorBase, CoprocessorSessionLocal, SessionLocal, coprocessor_engine, engine
from errors import VaultError
from fhe import LocalCoprocessor
from models import User
from vault import HealthVault, build_local_vault

logger = logging.getLogger(__name__)

MAX_PLAINTEXT = 2 ** CIPHERTEXT_BITS - 1

# =========================
# Auth helpers
# =========================
def jwt_issue(username: str) -> str:
    now = int(time.time())
    payload = {"sub": username, "iat": now, "exp": now + ACCESS_TOKEN_TTL_MIN * 60}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)

def jwt_verify(token: str):
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

auth_bearer = HTTPBearer()

def get_db(request: Request):
    db = request.app.state.sessions()
    try:
        yield db
    finally:
        db.close()

def get_vault(request: Request) -> HealthVault:
    return request.app.state.vault

def current_user(creds: HTTPAuthorizationCredentials = Depends(auth_bearer), db: Session = Depends(get_db)) -> User:
    payload = jwt_verify(creds.credentials)
    user = db.query(User).filter_by(username=payload["sub"]).first()
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user

# =========================
# Schemas
# =========================
class RegisterIn(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

class LoginIn(BaseModel):
    username: str
    password: str

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"

class CiphertextIn(BaseModel):
    handle: str
    proof: str

class RecordCreateIn(BaseModel):
    cid: str
    allergy: CiphertextIn
    risk: CiphertextIn

class RecordOut(BaseModel):
    id: int
    owner: str
    cid: str
    allergy_info: str
    risk_score: str
    created_at: datetime

class GrantIn(BaseModel):
    grantee: str
    enabled: bool

class DecryptRequestOut(BaseModel):
    request_id: int

class GatewayCallbackIn(BaseModel):
    request_id: int
    plaintext: int = Field(ge=0, le=MAX_PLAINTEXT)

class GatewayIn(BaseModel):
    identity: str = Field(min_length=1)

class PasswordIn(BaseModel):
    password: str

class EncryptIn(BaseModel):
    value: int = Field(ge=0, le=MAX_PLAINTEXT)

router = APIRouter()

# -------- Registration / Login --------
@router.post("/register", response_model=TokenOut)
def register(body: RegisterIn, db: Session = Depends(get_db), vault: HealthVault = Depends(get_vault)):
    # the trusted identities are provisioned out of band (main.py account create)
    if body.username in (vault.gateway_identity, vault.admin_identity):
        raise HTTPException(403, "That identity is reserved")
    try:
        user = create_account(db, body.username, body.password)
    except AccountExists:
        raise HTTPException(400, "username already registered")
    return TokenOut(access_token=jwt_issue(user.username))

@router.post("/login", response_model=TokenOut)
def login(body: LoginIn, db: Session = Depends(get_db)):
    user = authenticate(db, body.username, body.password)
    if not user:
        raise HTTPException(401, "Bad credentials")
    return TokenOut(access_token=jwt_issue(user.username))

@router.get("/me")
def whoami(me: User = Depends(current_user)):
    return {"username": me.username, "public_key_hex": me.public_key.hex()}

# -------- Records --------
@router.post("/records", response_model=RecordOut)
def create_record(body: RecordCreateIn, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    record_id = vault.create_record(
        me.username, body.cid,
        body.allergy.handle, body.allergy.proof,
        body.risk.handle, body.risk.proof,
    )
    return RecordOut(**asdict(vault.get_record(record_id)))

@router.get("/records", response_model=List[RecordOut])
def list_records(owner: Optional[str] = None, me: User = Depends(current_user),
                 vault: HealthVault = Depends(get_vault)):
    return [RecordOut(**asdict(r)) for r in vault.list_records(owner)]

@router.get("/records/{record_id}", response_model=RecordOut)
def get_record(record_id: int, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    return RecordOut(**asdict(vault.get_record(record_id)))

@router.post("/records/{record_id}/risk_delta", response_model=RecordOut)
def add_risk_delta(record_id: int, body: CiphertextIn, me: User = Depends(current_user),
                   vault: HealthVault = Depends(get_vault)):
    vault.add_risk_delta(me.username, record_id, body.handle, body.proof)
    return RecordOut(**asdict(vault.get_record(record_id)))

# -------- Access control --------
@router.post("/access")
def grant_access(body: GrantIn, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    vault.grant_access(me.username, body.grantee, body.enabled)
    return {"owner": me.username, "grantee": body.grantee, "enabled": body.enabled}

@router.get("/access/{owner}")
def list_grants(owner: str, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)) -> Dict[str, bool]:
    return vault.list_grants(owner)

@router.get("/access/{owner}/{grantee}")
def check_access(owner: str, grantee: str, me: User = Depends(current_user),
                 vault: HealthVault = Depends(get_vault)):
    return {"owner": owner, "grantee": grantee, "granted": vault.is_granted(owner, grantee)}

# -------- Decryption --------
@router.post("/records/{record_id}/decrypt", response_model=DecryptRequestOut)
def request_decrypt(record_id: int, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    return DecryptRequestOut(request_id=vault.request_risk_decrypt(me.username, record_id))

@router.get("/decryptions/{request_id}")
def decryption_status(request_id: int, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    return vault.get_decryption_request(me.username, request_id)

@router.get("/decryptions/{request_id}/result")
def decryption_result(
    request_id: int,
    timeout: float = Query(0.0, ge=0.0, le=30.0),
    me: User = Depends(current_user),
    vault: HealthVault = Depends(get_vault),
):
    event = vault.wait_for_disclosure(me.username, request_id, timeout=timeout)
    if event is None:
        return JSONResponse(status_code=202, content={"request_id": request_id, "status": "pending"})
    return {"request_id": event.request_id, "record_id": event.record_id, "plaintext": event.plaintext}

@router.post("/decryptions/{request_id}/open")
def open_disclosure(request_id: int, body: PasswordIn, me: User = Depends(current_user),
                    vault: HealthVault = Depends(get_vault)):
    sealed = vault.sealed_disclosure(me.username, request_id)
    try:
        priv = unlock_private_key(me, body.password)
    except InvalidTag:
        raise HTTPException(401, "Invalid password for unwrapping your private key")
    return {"request_id": request_id, "plaintext": open_sealed_value(priv, sealed)}

@router.post("/gateway/callback")
def gateway_callback(body: GatewayCallbackIn, me: User = Depends(current_user),
                     vault: HealthVault = Depends(get_vault)):
    event = vault.on_risk_decrypted(me.username, body.request_id, body.plaintext)
    return {"ok": True, "request_id": event.request_id, "record_id": event.record_id}

# -------- Administration / audit --------
@router.get("/admin/gateway")
def show_gateway(me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    return {"gateway": vault.gateway_identity}

@router.put("/admin/gateway")
def set_gateway(body: GatewayIn, me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    vault.set_gateway_identity(me.username, body.identity)
    return {"gateway": vault.gateway_identity}

@router.get("/audit")
def audit(kind: Optional[str] = None, limit: int = Query(100, ge=1, le=1000),
          me: User = Depends(current_user), vault: HealthVault = Depends(get_vault)):
    return vault.audit_trail(kind, limit)

# -------- Local stack only --------
dev_router = APIRouter(prefix="/dev")

@dev_router.post("/encrypt")
def dev_encrypt(body: EncryptIn, request: Request, me: User = Depends(current_user)):
    enc = request.app.state.coprocessor.encrypt_input(body.value, me.username)
    return {"handle": enc.handle, "proof": enc.proof}

@dev_router.post("/gateway/flush")
def dev_flush_gateway(request: Request, me: User = Depends(current_user)):
    delivered = request.app.state.gateway.fulfill_pending()
    return {"fulfilled": [e.request_id for e in delivered]}

# =========================
# FastAPI app
# =========================
def create_app(sessions: Callable[[], Session] = SessionLocal, vault: HealthVault = None,
               coprocessor=None, gateway=None) -> FastAPI:
    app = FastAPI(title="CareCipher Health Vault (encrypted records, oracle decryption)")
    if vault is None:
        if not LOCAL_STACK:
            raise RuntimeError("No encryption runtime configured; pass a vault or enable CARECIPHER_LOCAL_STACK")
        CoprocessorBase.metadata.create_all(coprocessor_engine)
        coprocessor = LocalCoprocessor.persistent(CoprocessorSessionLocal)
        vault, coprocessor, gateway = build_local_vault(sessions, coprocessor=coprocessor)
    app.state.sessions = sessions
    app.state.vault = vault
    app.state.coprocessor = coprocessor
    app.state.gateway = gateway

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    if coprocessor is not None and gateway is not None:
        app.include_router(dev_router)
    return app


def _default_app() -> FastAPI:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    Base.metadata.create_all(engine)
    return create_app()


app = _default_app()
