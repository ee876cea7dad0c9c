"""The local stack rebuilt over databases written by an earlier process."""
import pytest

from errors import CiphertextUnavailable
from vault import build_local_vault


def test_stored_handles_survive_a_restart(make_record, restart):
    record_id = make_record(risk=100)

    vault, coprocessor, _ = restart()
    delta = coprocessor.encrypt_input(5, "patient")
    vault.add_risk_delta("patient", record_id, delta.handle, delta.proof)

    assert coprocessor.reveal(vault.get_record(record_id).risk_score) == 105


def test_proofs_issued_before_a_restart_still_validate(vault, coprocessor, make_record, restart):
    record_id = make_record(risk=1)
    delta = coprocessor.encrypt_input(2, "patient")

    restarted, restarted_coprocessor, _ = restart()
    restarted.add_risk_delta("patient", record_id, delta.handle, delta.proof)

    assert restarted_coprocessor.reveal(restarted.get_record(record_id).risk_score) == 3


def test_pending_requests_are_resumed(vault, make_record, restart):
    record_id = make_record(risk=100)
    request_id = vault.request_risk_decrypt("patient", record_id)

    restarted, _, gateway = restart()
    assert gateway.pending() == [request_id]

    gateway.fulfill_pending()
    assert restarted.wait_for_disclosure("patient", request_id, timeout=1).plaintext == 100
    # numbering continues instead of reusing ids the vault already holds
    assert restarted.request_risk_decrypt("patient", record_id) == request_id + 1


def test_answered_requests_are_not_resumed(vault, gateway, make_record, restart):
    request_id = vault.request_risk_decrypt("patient", make_record())
    gateway.fulfill(request_id, 1)

    _, _, resumed = restart()
    assert resumed.pending() == []


def test_lost_runtime_state_is_reported_as_unavailable(vault, sessions, make_record):
    record_id = make_record()
    stored = vault.get_record(record_id).risk_score

    # a coprocessor that kept nothing from the earlier process
    forgetful, coprocessor, _ = build_local_vault(sessions)
    delta = coprocessor.encrypt_input(1, "patient")

    with pytest.raises(CiphertextUnavailable) as exc:
        forgetful.add_risk_delta("patient", record_id, delta.handle, delta.proof)
    assert exc.value.details == {"handle": stored}
    assert forgetful.get_record(record_id).risk_score == stored


def test_gateway_leaves_undecryptable_requests_queued(vault, sessions, make_record):
    request_id = vault.request_risk_decrypt("patient", make_record())

    _, _, gateway = build_local_vault(sessions)

    assert gateway.fulfill_pending() == []
    assert gateway.pending() == [request_id]
