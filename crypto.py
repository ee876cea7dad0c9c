"""
Local key material helpers.

Nothing here touches record ciphertexts: those are opaque handles owned by
the encryption runtime (see fhe.py). This module covers the keys the vault
itself manages:

- account keypairs (X25519), private half wrapped with the account password
- sealing disclosed plaintexts to the requester's public key for the audit trail
- AES-GCM at-rest slots used by the local reference coprocessor
"""
import os
from typing import Optional, Tuple

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.public import PrivateKey as X25519PrivateKey, PublicKey as X25519PublicKey, SealedBox

# ----- symmetric (AES-GCM) -----
def scrypt_kdf(passphrase: str, salt: bytes, length: int = 32) -> bytes:
    kdf = Scrypt(salt=salt, length=length, n=2**14, r=8, p=1)
    return kdf.derive(passphrase.encode("utf-8"))

def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    nonce = os.urandom(12)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, aad)

def aesgcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    return AESGCM(key).decrypt(nonce, ciphertext, aad)

def random_key32() -> bytes:
    return os.urandom(32)

# ----- account keys -----
def new_account_keypair(password: str):
    """Return (public_key, salt, nonce, enc_private_key) for a fresh account."""
    priv = X25519PrivateKey.generate()
    salt = os.urandom(16)
    nonce, enc_priv = aesgcm_encrypt(scrypt_kdf(password, salt), bytes(priv))
    return bytes(priv.public_key), salt, nonce, enc_priv

def unlock_account_key(enc_priv: bytes, nonce: bytes, salt: bytes, password: str) -> X25519PrivateKey:
    # raises cryptography.exceptions.InvalidTag on a wrong password
    raw = aesgcm_decrypt(scrypt_kdf(password, salt), nonce, enc_priv)
    return X25519PrivateKey(raw)

# ----- disclosed values (X25519 sealed boxes) -----
def seal_value(pubkey_bytes: bytes, value: int) -> bytes:
    return SealedBox(X25519PublicKey(pubkey_bytes)).encrypt(str(value).encode("ascii"))

def open_sealed_value(privkey: X25519PrivateKey, sealed: bytes) -> int:
    return int(SealedBox(privkey).decrypt(sealed).decode("ascii"))
