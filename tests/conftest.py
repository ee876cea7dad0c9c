"""Test configuration and fixtures."""

import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Keep the default app's database out of the working tree, BEFORE config is imported.
os.environ.setdefault("CARECIPHER_DATA_DIR", tempfile.mkdtemp(prefix="carecipher-test-"))
os.environ.setdefault("CARECIPHER_LOCAL_STACK", "1")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401 (registers tables)
from db import Base, CoprocessorBase
from fhe import LocalCoprocessor
from vault import build_local_vault


def _memory_sessions(base):
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def sessions():
    """Session factory over a fresh in-memory vault database."""
    engine, factory = _memory_sessions(Base)
    yield factory
    engine.dispose()


@pytest.fixture
def coprocessor_sessions():
    """The local coprocessor's own store, separate from the vault's."""
    engine, factory = _memory_sessions(CoprocessorBase)
    yield factory
    engine.dispose()


@pytest.fixture
def restart(sessions, coprocessor_sessions):
    """Build the local stack over the same databases, as a fresh process would."""
    def _restart():
        return build_local_vault(sessions, coprocessor=LocalCoprocessor.persistent(coprocessor_sessions))
    return _restart


@pytest.fixture
def stack(restart):
    return restart()


@pytest.fixture
def vault(stack):
    return stack[0]


@pytest.fixture
def coprocessor(stack):
    return stack[1]


@pytest.fixture
def gateway(stack):
    return stack[2]


@pytest.fixture
def received(vault):
    """Every notification published after commit, in order."""
    events = []
    vault.bus.subscribe(events.append)
    return events


@pytest.fixture
def make_record(vault, coprocessor):
    def _make(owner="patient", allergy=42, risk=100, cid="ipfs://cid"):
        enc_allergy = coprocessor.encrypt_input(allergy, owner)
        enc_risk = coprocessor.encrypt_input(risk, owner)
        return vault.create_record(owner, cid, enc_allergy.handle, enc_allergy.proof,
                                   enc_risk.handle, enc_risk.proof)
    return _make


@pytest.fixture
def add_delta(vault, coprocessor):
    def _add(caller, record_id, value):
        enc = coprocessor.encrypt_input(value, caller)
        vault.add_risk_delta(caller, record_id, enc.handle, enc.proof)
    return _add


@pytest.fixture
def decrypt_risk(vault, gateway):
    """Full oracle round trip: request, let the gateway answer, collect the disclosure."""
    def _decrypt(caller, record_id):
        request_id = vault.request_risk_decrypt(caller, record_id)
        gateway.fulfill_pending()
        return vault.wait_for_disclosure(caller, request_id, timeout=1).plaintext
    return _decrypt
