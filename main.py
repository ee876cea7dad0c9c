#!/usr/bin/env python3
"""
Operator CLI for the vault (run from project root):

    python main.py init-db
    python main.py account create gateway
    python main.py gateway show
    python main.py gateway set relayer-2 --as admin
    python main.py records [--owner alice]
    python main.py pending
    python main.py audit [--kind RiskDecrypted] [--limit 20]
    python main.py demo
"""
import argparse
import getpass
import logging
import sys

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import init_db
from accounts import AccountExists, authenticate, create_account
from config import DB_URL, LOG_LEVEL
from db import Base, CoprocessorBase, CoprocessorSessionLocal, SessionLocal, coprocessor_engine, engine as vault_engine
from errors import VaultError
from fhe import LocalCoprocessor
from vault import build_local_vault


def open_vault():
    Base.metadata.create_all(vault_engine)
    CoprocessorBase.metadata.create_all(coprocessor_engine)
    vault, _, _ = build_local_vault(SessionLocal, coprocessor=LocalCoprocessor.persistent(CoprocessorSessionLocal))
    return vault

# ---------- commands ----------
def cmd_init_db(args):
    init_db.main()

def cmd_account_create(args):
    password = getpass.getpass(f"password for {args.username}: ")
    if password != getpass.getpass("repeat password: "):
        print("Passwords do not match.")
        return 1
    with SessionLocal() as db:
        try:
            create_account(db, args.username, password)
        except AccountExists as e:
            print(f"Error: {e}")
            return 1
    print(f"Account created: {args.username}")

def cmd_gateway_show(args):
    vault = open_vault()
    print(f"Database: {DB_URL}")
    print(f"Gateway configured at: {vault.gateway_identity}")
    print(f"Admin identity: {vault.admin_identity}")

def cmd_gateway_set(args):
    vault = open_vault()
    password = getpass.getpass(f"password for {args.caller}: ")
    with SessionLocal() as db:
        if authenticate(db, args.caller, password) is None:
            print("Bad credentials.")
            return 1
    previous = vault.gateway_identity
    vault.set_gateway_identity(args.caller, args.identity)
    print(f"Gateway changed: {previous} -> {vault.gateway_identity}")

def cmd_records(args):
    rows = open_vault().list_records(args.owner)
    if not rows:
        print("No records.")
    for r in rows:
        print(f"#{r.id} owner={r.owner} cid={r.cid} created={r.created_at:%Y-%m-%d %H:%M:%S} risk={r.risk_score[:18]}...")

def cmd_pending(args):
    rows = open_vault().pending_decryptions()
    if not rows:
        print("No pending decryption requests.")
    for r in rows:
        print(f"request={r['request_id']} record={r['record_id']} requester={r['requester']} since={r['requested_at']}")

def cmd_audit(args):
    for e in open_vault().audit_trail(args.kind, args.limit):
        print(f"[{e['created_at']}] {e['kind']}: {e['payload']}")

def cmd_demo(args):
    """The end-to-end scenario, against a throwaway in-memory database."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    vault, coprocessor, gateway = build_local_vault(sessionmaker(bind=engine, autoflush=False, autocommit=False))
    patient, doctor = "patient", "doctor"

    allergy = coprocessor.encrypt_input(42, patient)
    risk = coprocessor.encrypt_input(100, patient)
    record_id = vault.create_record(patient, "ipfs://demo", allergy.handle, allergy.proof, risk.handle, risk.proof)
    print(f"1) {patient} created record #{record_id} (allergy=42, risk=100, both encrypted)")

    request_id = vault.request_risk_decrypt(patient, record_id)
    gateway.fulfill_pending()
    print(f"2) decrypt request {request_id} -> risk = {vault.wait_for_disclosure(patient, request_id, 1).plaintext}")

    vault.grant_access(patient, doctor, True)
    delta = coprocessor.encrypt_input(15, doctor)
    vault.add_risk_delta(doctor, record_id, delta.handle, delta.proof)
    request_id = vault.request_risk_decrypt(doctor, record_id)
    gateway.fulfill_pending()
    print(f"3) {doctor} (granted) added 15 -> risk = {vault.wait_for_disclosure(doctor, request_id, 1).plaintext}")

    vault.grant_access(patient, doctor, False)
    delta = coprocessor.encrypt_input(15, doctor)
    try:
        vault.add_risk_delta(doctor, record_id, delta.handle, delta.proof)
        print("4) unexpected: revoked doctor could still update")
        return 1
    except VaultError as e:
        print(f"4) access revoked -> {e.kind.value}: {e.message}")
    print("Done.")

# ---------- main ----------
def build_parser():
    parser = argparse.ArgumentParser(description="CareCipher vault operator CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables").set_defaults(func=cmd_init_db)

    account = sub.add_parser("account", help="provision accounts").add_subparsers(dest="action", required=True)
    create = account.add_parser("create", help="create an account (e.g. the gateway or admin identity)")
    create.add_argument("username")
    create.set_defaults(func=cmd_account_create)

    gw = sub.add_parser("gateway", help="trusted oracle identity").add_subparsers(dest="action", required=True)
    gw.add_parser("show").set_defaults(func=cmd_gateway_show)
    gw_set = gw.add_parser("set")
    gw_set.add_argument("identity")
    gw_set.add_argument("--as", dest="caller", required=True, help="identity performing the change")
    gw_set.set_defaults(func=cmd_gateway_set)

    records = sub.add_parser("records", help="list records")
    records.add_argument("--owner")
    records.set_defaults(func=cmd_records)

    sub.add_parser("pending", help="decryption requests still awaiting the oracle").set_defaults(func=cmd_pending)

    audit = sub.add_parser("audit", help="show the audit trail")
    audit.add_argument("--kind")
    audit.add_argument("--limit", type=int, default=50)
    audit.set_defaults(func=cmd_audit)

    sub.add_parser("demo", help="run the end-to-end scenario in memory").set_defaults(func=cmd_demo)
    return parser

def main(argv=None):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    try:
        return args.func(args) or 0
    except VaultError as e:
        print(f"Error: {e.kind.value}: {e.message} {e.details}")
        return 1

if __name__ == "__main__":
    sys.exit(main())
