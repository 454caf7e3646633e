"""
HTTP API tests - end-to-end record lifecycle and error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from loyalty_vault.api.main import app, get_runtime
from loyalty_vault.core.ciphertext import ConfidentialContext
from loyalty_vault.core.codec import encode_cleartexts
from loyalty_vault.core.runtime import build_runtime

SIGNING_KEY = b"api-test-signing-key-0123456789a"


@pytest.fixture(scope="module")
def context():
    """Small key for fast tests."""
    return ConfidentialContext.generate(bits=512)


@pytest.fixture
def runtime(context, tmp_path):
    """Manual-mode runtime on a temporary database."""
    runtime = build_runtime(
        db_path=str(tmp_path / "api.db"),
        oracle_mode="manual",
        signing_key=SIGNING_KEY,
        context=context
    )
    yield runtime
    runtime.shutdown()


@pytest.fixture
def client(runtime):
    """Create a test client bound to the test runtime."""
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


def encrypt(client, kind, value):
    response = client.post("/ciphertexts", json={"kind": kind, "value": value})
    assert response.status_code == 200
    return response.json()


def create_record(client, value=42, flag=True):
    response = client.post("/records", json={
        "encrypted_value": encrypt(client, "euint32", value),
        "encrypted_flag": encrypt(client, "ebool", flag)
    })
    assert response.status_code == 200
    return response.json()["id"]


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db_health"] is True
        assert data["oracle_running"] is False
        assert data["record_count"] == 0


class TestRecordLifecycle:
    """Create, request, fulfil, read."""

    def test_reveal_flow(self, client):
        record_id = create_record(client, 42, True)
        assert record_id == 1

        response = client.post(f"/records/{record_id}/decrypt")
        assert response.status_code == 200
        request_id = response.json()["request_id"]

        pending = client.get("/requests/pending").json()
        assert pending["count"] == 1
        assert pending["requests"][0]["request_id"] == request_id
        assert pending["requests"][0]["status"] == "pending"
        assert pending["requests"][0]["resolved_at"] is None

        assert client.get(f"/records/{record_id}/revealed").json()["revealed"] is False

        response = client.post("/oracle/fulfil")
        assert response.json() == {"delivered": 1, "remaining": 0}

        revealed = client.get(f"/records/{record_id}/revealed").json()
        assert revealed == {"record_id": 1, "value": 42, "flag": True, "revealed": True}
        assert client.get(f"/records/{record_id}").json()["revealed"] is True

    def test_list_records_newest_first(self, client):
        for value in (1, 2, 3):
            create_record(client, value)

        data = client.get("/records").json()
        assert data["count"] == 3
        assert [r["id"] for r in data["records"]] == [3, 2, 1]

    def test_get_unknown_record(self, client):
        assert client.get("/records/999").status_code == 404

    def test_unknown_record_reads_as_unrevealed(self, client):
        data = client.get("/records/999/revealed").json()
        assert data == {"record_id": 999, "value": 0, "flag": False, "revealed": False}


class TestOracleCallback:
    """Externally delivered oracle results."""

    def test_callback_reveals_then_rejects_replay(self, client, runtime):
        record_id = create_record(client, 7, False)
        request_id = client.post(f"/records/{record_id}/decrypt").json()["request_id"]

        cleartexts = encode_cleartexts(7, False)
        body = {
            "request_id": request_id,
            "cleartexts": cleartexts.hex(),
            "proof": "0x" + runtime.oracle.sign(request_id, cleartexts).hex()
        }

        response = client.post("/oracle/callback", json=body)
        assert response.status_code == 200
        assert response.json() == {"record_id": 1, "value": 7, "flag": False, "revealed": True}

        response = client.post("/oracle/callback", json=body)
        assert response.status_code == 409
        assert response.json()["error_type"] == "ALREADY_REVEALED"

    def test_invalid_proof(self, client):
        record_id = create_record(client)
        request_id = client.post(f"/records/{record_id}/decrypt").json()["request_id"]

        response = client.post("/oracle/callback", json={
            "request_id": request_id,
            "cleartexts": encode_cleartexts(42, True).hex(),
            "proof": "00" * 32
        })
        assert response.status_code == 403
        assert response.json()["error_type"] == "INVALID_PROOF"
        assert client.get(f"/records/{record_id}/revealed").json()["revealed"] is False

    def test_malformed_payload(self, client, runtime):
        record_id = create_record(client)
        request_id = client.post(f"/records/{record_id}/decrypt").json()["request_id"]
        payload = b"\x01\x02\x03"

        response = client.post("/oracle/callback", json={
            "request_id": request_id,
            "cleartexts": payload.hex(),
            "proof": runtime.oracle.sign(request_id, payload).hex()
        })
        assert response.status_code == 422
        assert response.json()["error_type"] == "DECODE_ERROR"

    def test_unknown_request(self, client):
        response = client.post("/oracle/callback", json={
            "request_id": "nope",
            "cleartexts": "00" * 64,
            "proof": "00" * 32
        })
        assert response.status_code == 404
        assert response.json()["error_type"] == "UNKNOWN_REQUEST"

    def test_non_hex_body_is_validation_error(self, client):
        response = client.post("/oracle/callback", json={
            "request_id": "nope",
            "cleartexts": "zz",
            "proof": "00"
        })
        assert response.status_code == 422


class TestErrorMapping:
    """Store errors surface as rejected actions with their kind."""

    def test_decrypt_missing_record(self, client):
        response = client.post("/records/999/decrypt")
        assert response.status_code == 404
        assert response.json()["error_type"] == "NOT_FOUND"

    def test_duplicate_pending_request(self, client):
        record_id = create_record(client)
        client.post(f"/records/{record_id}/decrypt")

        response = client.post(f"/records/{record_id}/decrypt")
        assert response.status_code == 409
        assert response.json()["error_type"] == "REQUEST_PENDING"

    def test_decrypt_revealed_record(self, client):
        record_id = create_record(client)
        client.post(f"/records/{record_id}/decrypt")
        client.post("/oracle/fulfil")

        response = client.post(f"/records/{record_id}/decrypt")
        assert response.status_code == 409
        assert response.json()["error_type"] == "ALREADY_REVEALED"

    def test_swapped_handles(self, client):
        response = client.post("/records", json={
            "encrypted_value": encrypt(client, "ebool", True),
            "encrypted_flag": encrypt(client, "euint32", 1)
        })
        assert response.status_code == 400
        assert response.json()["error_type"] == "INVALID_CIPHERTEXT"

    def test_encrypt_out_of_range(self, client):
        response = client.post("/ciphertexts", json={"kind": "euint32", "value": 2 ** 32})
        assert response.status_code == 400

    def test_unknown_kind_is_validation_error(self, client):
        response = client.post("/ciphertexts", json={"kind": "euint64", "value": 1})
        assert response.status_code == 422


class TestCampaigns:

    def test_accumulate_and_read(self, client, context):
        client.post("/campaigns/summer/accumulate", json={"encrypted_delta": encrypt(client, "euint32", 5)})
        response = client.post("/campaigns/summer/accumulate",
                               json={"encrypted_delta": encrypt(client, "euint32", 3)})
        assert response.status_code == 200
        data = response.json()
        assert data["initialized"] is True
        assert data["contributions"] == 2

        client.post("/campaigns/winter/accumulate", json={"encrypted_delta": encrypt(client, "euint32", 1)})
        assert client.get("/campaigns").json() == {"campaigns": ["summer", "winter"]}

        # Only the key holder can read the total
        from loyalty_vault.api.schemas import CiphertextModel
        total = CiphertextModel(**client.get("/campaigns/summer").json()["encrypted_total"]).to_handle()
        assert context.decrypt(total) == 8

    def test_unknown_campaign(self, client):
        data = client.get("/campaigns/autumn").json()
        assert data["initialized"] is False
        assert data["encrypted_total"]["token"] is None
        assert data["contributions"] == 0


class TestRedemption:
    """Brand/owner metadata and the redeem and expire endpoints."""

    def create_owned(self, client, value=42, brand="Acme", owner="0xAbC"):
        response = client.post("/records", json={
            "encrypted_value": encrypt(client, "euint32", value),
            "encrypted_flag": encrypt(client, "ebool", True),
            "brand": brand,
            "owner": owner
        })
        assert response.status_code == 200
        return response.json()["id"]

    def test_metadata_round_trip(self, client):
        record_id = self.create_owned(client, brand=" Acme ")
        data = client.get(f"/records/{record_id}").json()
        assert data["brand"] == "Acme"
        assert data["owner"] == "0xAbC"
        assert data["status"] == "active"
        assert data["closed_at"] is None

    def test_blank_owner_is_validation_error(self, client):
        response = client.post("/records", json={
            "encrypted_value": encrypt(client, "euint32", 1),
            "encrypted_flag": encrypt(client, "ebool", True),
            "owner": "  "
        })
        assert response.status_code == 422

    def test_list_filters(self, client):
        self.create_owned(client, brand="Acme", owner="0xabc")
        self.create_owned(client, brand="Globex", owner="0xdef")
        self.create_owned(client, brand="Acme", owner="0xdef")
        client.post("/records/3/expire")

        def ids(**params):
            return [r["id"] for r in client.get("/records", params=params).json()["records"]]

        assert ids(brand="Acme") == [3, 1]
        assert ids(owner="0xDEF") == [3, 2]
        assert ids(status="expired") == [3]
        assert ids(status="active", owner="0xdef") == [2]

    def test_invalid_status_filter(self, client):
        assert client.get("/records", params={"status": "archived"}).status_code == 400

    def test_redeem_flow(self, client):
        record_id = self.create_owned(client)

        response = client.post(f"/records/{record_id}/redeem", json={"owner": "0xabc"})
        assert response.status_code == 409
        assert response.json()["error_type"] == "NOT_REVEALED"

        client.post(f"/records/{record_id}/decrypt")
        client.post("/oracle/fulfil")

        response = client.post(f"/records/{record_id}/redeem", json={"owner": "0xdef"})
        assert response.status_code == 403
        assert response.json()["error_type"] == "NOT_OWNER"

        response = client.post(f"/records/{record_id}/redeem", json={"owner": "0xabc"})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "redeemed"
        assert data["revealed"] is True
        assert data["closed_at"] is not None

        response = client.post(f"/records/{record_id}/redeem", json={"owner": "0xabc"})
        assert response.status_code == 409
        assert response.json()["error_type"] == "RECORD_NOT_ACTIVE"
        assert response.json()["details"]["status"] == "redeemed"

    def test_redeem_without_body(self, client):
        record_id = create_record(client)
        client.post(f"/records/{record_id}/decrypt")
        client.post("/oracle/fulfil")

        response = client.post(f"/records/{record_id}/redeem")
        assert response.status_code == 200
        assert response.json()["status"] == "redeemed"

    def test_expire(self, client):
        record_id = create_record(client)

        response = client.post(f"/records/{record_id}/expire")
        assert response.status_code == 200
        assert response.json()["status"] == "expired"

        response = client.post(f"/records/{record_id}/expire")
        assert response.status_code == 409
        assert response.json()["error_type"] == "RECORD_NOT_ACTIVE"

    def test_unknown_record(self, client):
        assert client.post("/records/999/redeem").status_code == 404
        assert client.post("/records/999/expire").status_code == 404

    def test_redemption_notifications(self, client):
        record_id = create_record(client)
        client.post(f"/records/{record_id}/decrypt")
        client.post("/oracle/fulfil")
        client.post(f"/records/{record_id}/redeem")

        data = client.get("/notifications", params={"record_id": record_id}).json()
        assert data["notifications"][-1]["kind"] == "record_redeemed"


class TestStatsAndNotifications:

    def test_stats(self, client):
        create_record(client)
        create_record(client)
        client.post("/records/1/decrypt")
        client.post("/oracle/fulfil")

        assert client.get("/stats").json() == {
            "records": 2,
            "revealed": 1,
            "pending_requests": 0,
            "campaigns": 0,
            "by_status": {"active": 2, "redeemed": 0, "expired": 0},
            "revealed_points": {"active": 42, "redeemed": 0, "expired": 0}
        }

        client.post("/records/1/redeem")
        stats = client.get("/stats").json()
        assert stats["by_status"] == {"active": 1, "redeemed": 1, "expired": 0}
        assert stats["revealed_points"] == {"active": 0, "redeemed": 42, "expired": 0}

    def test_notifications(self, client):
        record_id = create_record(client)
        client.post(f"/records/{record_id}/decrypt")
        client.post("/oracle/fulfil")

        data = client.get("/notifications", params={"record_id": record_id}).json()
        assert [n["kind"] for n in data["notifications"]] == \
            ["record_created", "decryption_requested", "record_decrypted"]
