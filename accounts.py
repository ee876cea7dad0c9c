"""
API accounts. The username is the caller identity the vault sees; each account
also holds an X25519 keypair so disclosures can be sealed to it.
"""
from typing import Optional

from passlib.hash import argon2
from sqlalchemy.orm import Session

from crypto import new_account_keypair, unlock_account_key
from models import User


class AccountExists(ValueError):
    pass


def create_account(db: Session, username: str, password: str) -> User:
    if db.query(User).filter_by(username=username).first():
        raise AccountExists(f"{username} is already registered")
    public_key, salt, nonce, enc_priv = new_account_keypair(password)
    user = User(
        username=username,
        password_hash=argon2.hash(password),
        public_key=public_key,
        enc_private_key=enc_priv,
        enc_private_key_nonce=nonce,
        enc_private_key_salt=salt,
    )
    db.add(user)
    db.commit()
    return user


def authenticate(db: Session, username: str, password: str) -> Optional[User]:
    user = db.query(User).filter_by(username=username).first()
    if not user or not argon2.verify(password, user.password_hash):
        return None
    return user


def unlock_private_key(user: User, password: str):
    return unlock_account_key(user.enc_private_key, user.enc_private_key_nonce, user.enc_private_key_salt, password)
