"""
Tests for the Granite Bank HTTP/WebSocket API.

The app is built around an in-memory engine with the accrual loop off, so
every request is deterministic.
"""

import base64

import pytest
from fastapi.testclient import TestClient

from granite_sim.api.server import create_app, SimulationAPI
from granite_sim.api.schemas import ActionRequest, ErrorResponse, JoinRequest
from granite_sim.systems import TextNameExtractor

from conftest import WHOLESALE_ANSWERS


ID_PHOTO = "data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode("ascii")


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def app(engine):
    return create_app(engine=engine, enable_scheduler=False)


@pytest.fixture
def client(app):
    return TestClient(app)


def join(client, engine, name="Ada Lovelace", answers=None):
    response = client.post("/api/join", json={
        "name": name,
        "token": engine.state.session.join.token,
        "quiz_answers": answers or {},
    })
    assert response.status_code == 200
    return response.json()


def gm_phase(client, phase):
    return client.post("/api/gm/phase", json={"phase": phase})


# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------

class TestSchemas:
    def test_action_payload_defaults_empty(self):
        request = ActionRequest(participant_id="p1", action_type="hold")
        assert request.payload == {}

    def test_join_defaults(self):
        request = JoinRequest(name="Ada", token="t")
        assert request.code == ""
        assert request.quiz_answers == {}

    def test_error_envelope(self):
        body = ErrorResponse(error="nope", code="X").model_dump()
        assert body == {"ok": False, "error": "nope", "code": "X"}


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------

class TestSessionEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.json() == {"ok": True, "service": "granite-bank-api"}

    def test_app_holds_api(self, app, engine):
        assert isinstance(app.state.api, SimulationAPI)
        assert app.state.api.engine is engine

    def test_session_shows_join_token(self, client, engine):
        """The facilitator session view carries the live token."""
        session = client.get("/api/session").json()["session"]
        assert session["code"] == engine.state.session.code
        assert session["join_token"] == engine.state.session.join.token

    def test_rotate_join(self, client, engine):
        before = engine.state.session.join.token
        session = client.post("/api/session/rotate-join").json()["session"]
        assert session["join_token"] != before

    def test_reset(self, client, engine):
        join(client, engine)
        session = client.post("/api/session/reset").json()["session"]
        assert session["participants"] == 0
        assert session["phase"] == "lobby"

    def test_quiz(self, client):
        body = client.get("/api/join/quiz").json()
        assert body["ok"] is True
        assert len(body["questions"]) == 3


class TestParticipantEndpoints:
    def test_join_assigns_role(self, client, engine):
        depositor = join(client, engine)
        lender = join(client, engine, "Grace Hopper", WHOLESALE_ANSWERS)
        assert depositor["role"] == "depositor"
        assert lender["role"] == "wholesale"
        assert lender["quiz_score"] == 3
        assert depositor["snapshot"]["participant"]["id"] == depositor["participant_id"]

    def test_join_bad_token_401(self, client):
        response = client.post("/api/join", json={"name": "Ada Lovelace", "token": "stale"})
        assert response.status_code == 401
        assert response.json() == {
            "ok": False,
            "error": "Join code expired. Scan the latest QR code.",
            "code": "QR_EXPIRED",
        }

    def test_join_duplicate_409(self, client, engine):
        join(client, engine)
        response = client.post("/api/join", json={
            "name": "ADA LOVELACE",
            "token": engine.state.session.join.token,
        })
        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_NAME"

    def test_join_short_name_400(self, client, engine):
        response = client.post("/api/join", json={"name": "Al", "token": engine.state.session.join.token})
        assert response.status_code == 400

    def test_resume(self, client, engine):
        joined = join(client, engine)
        body = client.post("/api/resume", json={"resume_token": joined["resume_token"]}).json()
        assert body["participant_id"] == joined["participant_id"]

    def test_resume_unknown_404(self, client):
        response = client.post("/api/resume", json={"resume_token": "missing"})
        assert response.status_code == 404

    def test_state_with_and_without_participant(self, client, engine):
        joined = join(client, engine)
        public = client.get("/api/state").json()["snapshot"]
        assert public["participant"] is None
        assert "join_token" not in public["session"]

        own = client.get("/api/state", params={"participant_id": joined["participant_id"]}).json()
        assert own["snapshot"]["participant"]["name"] == "Ada Lovelace"

    def test_action_flow(self, client, engine):
        joined = join(client, engine)
        gm_phase(client, "phase1")
        response = client.post("/api/action", json={
            "participant_id": joined["participant_id"],
            "action_type": "select_product",
            "payload": {"product": "fixed_1y"},
        })
        assert response.status_code == 200
        assert response.json()["snapshot"]["participant"]["draft_product"] == "fixed_1y"

    def test_rejected_action_400(self, client, engine):
        joined = join(client, engine)
        response = client.post("/api/action", json={
            "participant_id": joined["participant_id"],
            "action_type": "hold",
        })
        assert response.status_code == 400
        assert response.json()["code"] == "ACTION_REJECTED"

    def test_unknown_participant_404(self, client):
        response = client.post("/api/action", json={"participant_id": "ghost", "action_type": "hold"})
        assert response.status_code == 404


class TestFacilitatorEndpoints:
    def test_phase_sequence(self, client):
        assert gm_phase(client, "phase1").json()["snapshot"]["session"]["phase"] == "phase1"
        response = gm_phase(client, "phase3")
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    def test_event_errors(self, client):
        gm_phase(client, "phase1")
        gm_phase(client, "phase2")
        assert client.post("/api/gm/event", json={"event_key": "LIBOR_RISE"}).status_code == 200
        assert client.post("/api/gm/event", json={"event_key": "LIBOR_RISE"}).status_code == 409
        assert client.post("/api/gm/event", json={"event_key": "NOPE"}).status_code == 400

    def test_boe_decision(self, client):
        for phase in ["phase1", "phase2", "phase3", "phase4"]:
            gm_phase(client, phase)
        assert client.post("/api/gm/boe", json={"decision": "maybe"}).status_code == 400
        snapshot = client.post("/api/gm/boe", json={"decision": "rescue"}).json()["snapshot"]
        assert snapshot["session"]["bank_status"] == "RESCUED"
        assert client.post("/api/gm/boe", json={"decision": "collapse"}).status_code == 409

    def test_notify(self, client, engine):
        body = client.post("/api/gm/notify", json={"message": "  Two   minutes left "}).json()
        assert body["event"]["text"] == "GM: Two minutes left"
        assert body["event"]["type"] == "broadcast"

        assert client.post("/api/gm/notify", json={"message": "   "}).status_code == 400
        assert client.post("/api/gm/notify", json={"message": "x" * 201}).status_code == 400

    def test_reveal(self, client, engine):
        join(client, engine)
        snapshot = client.post("/api/gm/reveal").json()["snapshot"]
        assert snapshot["session"]["reveal_names"] is True
        assert snapshot["leaderboard"][0]["display_name"] == "Ada Lovelace"


class TestWebSocket:
    def test_initial_state_and_ping(self, client, engine):
        with client.websocket_connect("/updates") as ws:
            first = ws.receive_json()
            assert first["type"] == "initial_state"
            assert first["snapshot"]["session"]["code"] == engine.state.session.code

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


class TestNameCapture:
    def test_extracts_name_from_photo(self, engine):
        """The configured OCR provider sees the decoded image bytes."""
        seen = []

        def fake_ocr(image: bytes) -> str:
            seen.append(image)
            return "NORTHFIELD UNIVERSITY\nPriya Raman\nDOB 04/07/2004 FEMALE"

        app = create_app(engine=engine, enable_scheduler=False, identity=TextNameExtractor(fake_ocr))
        body = TestClient(app).post("/api/ocr-name", json={"image_data_url": ID_PHOTO}).json()

        assert body["ok"] is True
        assert body["full_name"] == "PRIYA RAMAN"
        assert body["confidence"] > 0
        assert seen == [b"jpeg-bytes"]

    def test_no_provider_503(self, client):
        response = client.post("/api/ocr-name", json={"image_data_url": ID_PHOTO})
        assert response.status_code == 503
        assert response.json()["code"] == "OCR_UNAVAILABLE"

    def test_bad_image_400(self, client):
        response = client.post("/api/ocr-name", json={"image_data_url": "hello"})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_IMAGE"


class TestBodyLimit:
    @pytest.fixture
    def small_client(self, engine):
        return TestClient(create_app(engine=engine, enable_scheduler=False, max_body_bytes=256))

    def test_declared_length_rejected(self, small_client, engine):
        response = small_client.post("/api/gm/notify", json={"message": "x" * 400})
        assert response.status_code == 413
        assert response.json() == {"ok": False, "error": "Request body too large", "code": "BODY_TOO_LARGE"}

    def test_chunked_body_counted(self, small_client, engine):
        """Bodies without a content-length are measured as they arrive."""
        feed_before = len(engine.state.session.event_feed)

        def chunks():
            yield b'{"message": "'
            for _ in range(10):
                yield b"x" * 50
            yield b'"}'

        response = small_client.post(
            "/api/gm/notify",
            content=chunks(),
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json()["code"] == "BODY_TOO_LARGE"
        assert len(engine.state.session.event_feed) == feed_before

    def test_small_body_passes(self, small_client):
        response = small_client.post("/api/gm/notify", json={"message": "Two minutes"})
        assert response.status_code == 200
