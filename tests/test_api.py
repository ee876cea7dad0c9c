import pytest
from fastapi.testclient import TestClient

from accounts import create_account
from app import create_app


@pytest.fixture
def client(sessions, vault, coprocessor, gateway):
    return TestClient(create_app(sessions, vault, coprocessor, gateway))


@pytest.fixture
def login(client):
    def _login(username, password="pw", register=True):
        if register:
            r = client.post("/register", json={"username": username, "password": password})
        else:
            r = client.post("/login", json={"username": username, "password": password})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['access_token']}"}
    return _login


@pytest.fixture
def provision(sessions, login):
    """Accounts that cannot self-register (gateway, admin)."""
    def _provision(username, password="pw"):
        with sessions() as db:
            create_account(db, username, password)
        return login(username, password, register=False)
    return _provision


def encrypt(client, headers, value):
    r = client.post("/dev/encrypt", json={"value": value}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def create_record(client, headers, allergy=42, risk=100):
    body = {"cid": "ipfs://cid", "allergy": encrypt(client, headers, allergy),
            "risk": encrypt(client, headers, risk)}
    r = client.post("/records", json=body, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_register_login_me(client, login):
    login("patient")
    headers = login("patient", register=False)

    r = client.get("/me", headers=headers)
    assert r.status_code == 200
    assert r.json()["username"] == "patient"
    assert len(bytes.fromhex(r.json()["public_key_hex"])) == 32


def test_duplicate_registration(client, login):
    login("patient")
    r = client.post("/register", json={"username": "patient", "password": "x"})
    assert r.status_code == 400


@pytest.mark.parametrize("username", ["gateway", "admin"])
def test_reserved_identities_cannot_self_register(client, username):
    r = client.post("/register", json={"username": username, "password": "pw"})
    assert r.status_code == 403


def test_bad_credentials(client, login):
    login("patient")
    r = client.post("/login", json={"username": "patient", "password": "wrong"})
    assert r.status_code == 401


def test_requires_a_token(client):
    assert client.get("/records").status_code in (401, 403)
    r = client.get("/records", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_create_and_read_record(client, login):
    headers = login("patient")
    created = create_record(client, headers)

    assert created["id"] == 0
    assert created["owner"] == "patient"
    assert created["risk_score"].startswith("0x")

    r = client.get("/records/0", headers=headers)
    assert r.json() == created
    assert [rec["id"] for rec in client.get("/records", params={"owner": "patient"}, headers=headers).json()] == [0]


def test_vault_errors_map_to_status_codes(client, login):
    patient = login("patient")
    doctor = login("doctor")
    create_record(client, patient)

    r = client.get("/records/9", headers=patient)
    assert r.status_code == 404
    assert r.json() == {"error": "NOT_FOUND", "message": "Record 9 not found", "details": {"record_id": 9}}

    r = client.post("/records/0/risk_delta", json=encrypt(client, doctor, 1), headers=doctor)
    assert r.status_code == 403
    assert r.json()["error"] == "UNAUTHORIZED"

    # a proof issued to the doctor does not validate for the patient
    r = client.post("/records/0/risk_delta", json=encrypt(client, doctor, 1), headers=patient)
    assert r.status_code == 422
    assert r.json()["error"] == "INVALID_PROOF"


def test_grant_and_delta(client, login):
    patient = login("patient")
    doctor = login("doctor")
    record = create_record(client, patient)

    r = client.post("/access", json={"grantee": "doctor", "enabled": True}, headers=patient)
    assert r.json() == {"owner": "patient", "grantee": "doctor", "enabled": True}
    assert client.get("/access/patient/doctor", headers=doctor).json()["granted"] is True
    assert client.get("/access/patient", headers=doctor).json() == {"doctor": True}

    r = client.post("/records/0/risk_delta", json=encrypt(client, doctor, 15), headers=doctor)
    assert r.status_code == 200
    assert r.json()["risk_score"] != record["risk_score"]
    assert r.json()["allergy_info"] == record["allergy_info"]


def test_decryption_round_trip(client, login):
    patient = login("patient", "s3cret")
    create_record(client, patient, risk=100)

    request_id = client.post("/records/0/decrypt", headers=patient).json()["request_id"]
    status = client.get(f"/decryptions/{request_id}", headers=patient).json()
    assert status["status"] == "pending"

    r = client.get(f"/decryptions/{request_id}/result", headers=patient)
    assert r.status_code == 202

    assert client.post("/dev/gateway/flush", headers=patient).json() == {"fulfilled": [request_id]}

    r = client.get(f"/decryptions/{request_id}/result", params={"timeout": 1}, headers=patient)
    assert r.status_code == 200
    assert r.json() == {"request_id": request_id, "record_id": 0, "plaintext": 100}

    # the sealed copy in the audit trail can be reopened with the account password
    r = client.post(f"/decryptions/{request_id}/open", json={"password": "s3cret"}, headers=patient)
    assert r.json() == {"request_id": request_id, "plaintext": 100}
    r = client.post(f"/decryptions/{request_id}/open", json={"password": "nope"}, headers=patient)
    assert r.status_code == 401


def test_gateway_callback_over_http(client, login, provision):
    patient = login("patient")
    create_record(client, patient)
    request_id = client.post("/records/0/decrypt", headers=patient).json()["request_id"]

    r = client.post("/gateway/callback", json={"request_id": request_id, "plaintext": 100}, headers=patient)
    assert r.status_code == 403
    assert r.json()["error"] == "UNAUTHORIZED_GATEWAY"

    gateway = provision("gateway")
    r = client.post("/gateway/callback", json={"request_id": request_id, "plaintext": 100}, headers=gateway)
    assert r.json() == {"ok": True, "request_id": request_id, "record_id": 0}

    r = client.post("/gateway/callback", json={"request_id": request_id, "plaintext": 100}, headers=gateway)
    assert r.status_code == 404
    assert r.json()["details"]["status"] == "fulfilled"


def test_callback_plaintext_must_fit_the_domain(client, provision):
    gateway = provision("gateway")
    r = client.post("/gateway/callback", json={"request_id": 1, "plaintext": 65536}, headers=gateway)
    assert r.status_code == 422


def test_admin_changes_gateway(client, login, provision):
    patient = login("patient")
    r = client.put("/admin/gateway", json={"identity": "patient"}, headers=patient)
    assert r.status_code == 403

    admin = provision("admin")
    r = client.put("/admin/gateway", json={"identity": "relayer-2"}, headers=admin)
    assert r.json() == {"gateway": "relayer-2"}
    assert client.get("/admin/gateway", headers=patient).json() == {"gateway": "relayer-2"}

    kinds = [e["kind"] for e in client.get("/audit", headers=admin).json()]
    assert kinds == ["GatewayUpdated"]
