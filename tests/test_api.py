"""End-to-end tests of the HTTP API with fake collaborators (no tesseract, no network)."""

import pytest
from httpx import ASGITransport, AsyncClient

from fakes import MOMO_SMS, TD3_SPECIMEN, FakeOcrEngine, FakeOtpService, FakeVisualAnalyzer, ussd_analysis
from trustproof.errors import OcrFailure
from trustproof.main import (
    app,
    document_pipeline,
    ocr_engine,
    otp_service,
    screenshot_analyzer,
    session_store,
)
from trustproof.services.fields import FieldExtractionEngine
from trustproof.services.pipeline import DocumentPipeline
from trustproof.services.registry import TOTAL_SOURCE_WEIGHT
from trustproof.services.session import SessionStore


class Collaborators:
    def __init__(self) -> None:
        self.engine = FakeOcrEngine(confidence=85)
        self.otp = FakeOtpService()
        self.analyzer = FakeVisualAnalyzer(ussd_analysis())
        self.store = SessionStore()
        self.slow_threshold = 30.0


@pytest.fixture
def fakes() -> Collaborators:
    return Collaborators()


@pytest.fixture
async def client(fakes: Collaborators):
    app.dependency_overrides[ocr_engine] = lambda: fakes.engine
    app.dependency_overrides[document_pipeline] = lambda: DocumentPipeline(
        fakes.engine, FieldExtractionEngine(None), slow_threshold=fakes.slow_threshold
    )
    app.dependency_overrides[otp_service] = lambda: fakes.otp
    app.dependency_overrides[screenshot_analyzer] = lambda: fakes.analyzer
    app.dependency_overrides[session_store] = lambda: fakes.store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def new_session(client: AsyncClient) -> str:
    resp = await client.post("/api/sessions")
    assert resp.status_code == 201
    return resp.json()["session_id"]


async def upload(client: AsyncClient, session_id: str, content: bytes, content_type: str = "image/png"):
    return await client.post(
        f"/api/sessions/{session_id}/document",
        files={"document": ("id.png", content, content_type)},
        data={"document_type": "cni"},
    )


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/api/health")
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_full_certification(client: AsyncClient, png_bytes: bytes) -> None:
    sid = await new_session(client)

    resp = await upload(client, sid, png_bytes)
    assert resp.status_code == 200
    preview = resp.json()
    assert preview["degraded"] is True
    assert preview["requires_manual_review"] is False
    assert preview["fields"]["document_number"] == "CI1234567"

    resp = await client.post(
        f"/api/sessions/{sid}/document/confirm",
        json={"document_token": preview["document_token"], "corrections": {"place_of_birth": "Abidjan"}},
    )
    assert resp.status_code == 200
    assert resp.json()["place_of_birth"] == "Abidjan"

    resp = await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456"})
    view = resp.json()
    assert view["state"] == "otp"
    assert view["code_sent"] is True
    assert view["expires_in_seconds"] > 0

    resp = await client.post(f"/api/sessions/{sid}/phone/otp/verify", json={"code": "000000"})
    assert resp.json()["state"] == "otp"
    assert resp.json()["error"]

    resp = await client.post(f"/api/sessions/{sid}/phone/otp/verify", json={"code": "123456"})
    assert resp.json()["state"] == "ussd"

    resp = await client.post(
        f"/api/sessions/{sid}/phone/ussd", files={"screenshot": ("om.png", png_bytes, "image/png")}
    )
    assert resp.json()["state"] == "validation"
    assert resp.json()["proofs"]["name_matched"] is True

    resp = await client.post(f"/api/sessions/{sid}/phone/complete")
    view = resp.json()
    assert view["state"] == "complete"
    assert view["result"]["trust_score"] == 85
    assert view["result"]["proof_level"] == "certified"

    resp = await client.get(f"/api/sessions/{sid}/snapshot")
    snapshot = resp.json()
    assert [s["type"] for s in snapshot["sources"]] == ["document_ocr", "otp", "ussd_capture"]
    assert snapshot["certainty_coefficient"] == pytest.approx(round(2.55 / TOTAL_SOURCE_WEIGHT, 4), abs=1e-4)


@pytest.mark.asyncio
async def test_identity_name_defaults_to_confirmed_document(client, fakes, png_bytes) -> None:
    sid = await new_session(client)
    preview = (await upload(client, sid, png_bytes)).json()
    await client.post(f"/api/sessions/{sid}/document/confirm", json={"document_token": preview["document_token"]})
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456"})

    session = fakes.store.get(sid)
    assert session.phone_flow.identity_name == "KOUASSI AMANI JEAN"


@pytest.mark.asyncio
async def test_stale_document_token(client: AsyncClient, png_bytes: bytes) -> None:
    sid = await new_session(client)
    first = (await upload(client, sid, png_bytes)).json()["document_token"]
    second = (await upload(client, sid, png_bytes)).json()["document_token"]

    resp = await client.post(f"/api/sessions/{sid}/document/confirm", json={"document_token": first})
    assert resp.status_code == 409
    resp = await client.post(f"/api/sessions/{sid}/document/confirm", json={"document_token": second})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_cancelled_document(client: AsyncClient, png_bytes: bytes) -> None:
    sid = await new_session(client)
    token = (await upload(client, sid, png_bytes)).json()["document_token"]
    assert (await client.delete(f"/api/sessions/{sid}/document")).status_code == 204
    resp = await client.post(f"/api/sessions/{sid}/document/confirm", json={"document_token": token})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_low_confidence_needs_review(client, fakes, png_bytes) -> None:
    fakes.engine.confidence = 40
    sid = await new_session(client)
    preview = (await upload(client, sid, png_bytes)).json()
    assert preview["requires_manual_review"] is True

    url = f"/api/sessions/{sid}/document/confirm"
    resp = await client.post(url, json={"document_token": preview["document_token"]})
    assert resp.status_code == 422
    assert resp.json()["manual_review_required"] is True

    resp = await client.post(url, json={"document_token": preview["document_token"], "acknowledge_review": True})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_unknown_correction(client: AsyncClient, png_bytes: bytes) -> None:
    sid = await new_session(client)
    token = (await upload(client, sid, png_bytes)).json()["document_token"]
    resp = await client.post(
        f"/api/sessions/{sid}/document/confirm",
        json={"document_token": token, "corrections": {"height": "180"}},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_rejected_upload_type(client: AsyncClient) -> None:
    sid = await new_session(client)
    resp = await upload(client, sid, b"%PDF-1.4", content_type="application/pdf")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_ocr_failure_is_retryable(client, fakes, png_bytes) -> None:
    fakes.engine.error = OcrFailure("engine crashed")
    sid = await new_session(client)
    resp = await upload(client, sid, png_bytes)
    assert resp.status_code == 422
    assert resp.json()["retry"] is True

    token = fakes.store.get(sid).document_token
    status = (await client.get(f"/api/sessions/{sid}/document/{token}")).json()
    assert status["status"] == "failed"
    assert status["retry"] is True


@pytest.mark.asyncio
async def test_unknown_session(client: AsyncClient) -> None:
    assert (await client.get("/api/sessions/nope/snapshot")).status_code == 404


@pytest.mark.asyncio
async def test_closed_session(client: AsyncClient) -> None:
    sid = await new_session(client)
    assert (await client.delete(f"/api/sessions/{sid}")).status_code == 204
    assert (await client.get(f"/api/sessions/{sid}/snapshot")).status_code == 404


@pytest.mark.asyncio
async def test_phone_routes_require_start(client: AsyncClient) -> None:
    sid = await new_session(client)
    resp = await client.post(f"/api/sessions/{sid}/phone/skip")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_invalid_transition(client: AsyncClient) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456", "identity_name": "A B"})
    resp = await client.post(f"/api/sessions/{sid}/phone/complete")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_skip_path_and_resend(client, fakes) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456", "identity_name": "A B"})
    await client.post(f"/api/sessions/{sid}/phone/otp/resend")
    assert len(fakes.otp.sent) == 2

    for _ in range(2):
        assert (await client.post(f"/api/sessions/{sid}/phone/skip")).status_code == 200
    view = (await client.post(f"/api/sessions/{sid}/phone/complete")).json()
    assert view["result"]["trust_score"] == 0
    assert view["result"]["proof_level"] == "none"

    snapshot = (await client.get(f"/api/sessions/{sid}/snapshot")).json()
    assert snapshot["certainty_coefficient"] == 0.0


@pytest.mark.asyncio
async def test_overlong_code_rejected(client: AsyncClient) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456"})
    resp = await client.post(f"/api/sessions/{sid}/phone/otp/verify", json={"code": "1234567"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_documents_analyze_endpoint(client: AsyncClient) -> None:
    resp = await client.post(
        "/api/documents/analyze",
        json={"ocr_text": "\n".join(TD3_SPECIMEN), "document_type": "passport", "ocr_confidence": 70},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["mrz_validated"] is True
    assert body["document_type"] == "passport"
    assert body["extraction_confidence"] >= 90


@pytest.mark.asyncio
async def test_document_status(client: AsyncClient, png_bytes: bytes) -> None:
    sid = await new_session(client)
    token = (await upload(client, sid, png_bytes)).json()["document_token"]

    status = (await client.get(f"/api/sessions/{sid}/document/{token}")).json()
    assert status["status"] == "ready"
    assert status["slow_analysis"] is False
    assert status["preview"]["fields"]["document_number"] == "CI1234567"

    await client.post(f"/api/sessions/{sid}/document/confirm", json={"document_token": token})
    status = (await client.get(f"/api/sessions/{sid}/document/{token}")).json()
    assert status["status"] == "confirmed"

    assert (await client.get(f"/api/sessions/{sid}/document/unknown")).status_code == 409


@pytest.mark.asyncio
async def test_slow_document_offers_manual_entry(client, fakes, png_bytes) -> None:
    fakes.engine.delay = 0.5
    fakes.slow_threshold = 0.05
    sid = await new_session(client)

    resp = await upload(client, sid, png_bytes)
    assert resp.status_code == 202
    status = resp.json()
    assert status["status"] == "pending"
    assert status["slow_analysis"] is True
    token = status["document_token"]

    status = (await client.get(f"/api/sessions/{sid}/document/{token}")).json()
    assert status["status"] == "pending"
    assert status["slow_analysis"] is True

    url = f"/api/sessions/{sid}/document/confirm"
    typed = {
        "document_token": token,
        "manual_entry": True,
        "corrections": {"full_name": "KOUASSI AMANI JEAN", "document_number": "CI1234567"},
    }
    resp = await client.post(url, json=typed)
    assert resp.status_code == 422
    assert resp.json()["manual_review_required"] is True

    resp = await client.post(url, json={**typed, "acknowledge_review": True})
    assert resp.status_code == 200
    assert resp.json()["full_name"] == "KOUASSI AMANI JEAN"
    assert resp.json()["extraction_confidence"] == 0

    # The OCR result lands after the user typed the fields in
    session = fakes.store.get(sid)
    await session.document_job.task
    assert session.pending_fields is None
    assert session.identity.full_name == "KOUASSI AMANI JEAN"

    status = (await client.get(f"/api/sessions/{sid}/document/{token}")).json()
    assert status["status"] == "confirmed"
    assert (await client.post(url, json={"document_token": token})).status_code == 409

    snapshot = (await client.get(f"/api/sessions/{sid}/snapshot")).json()
    assert snapshot["sources"] == [{"type": "document_ocr", "verified": False, "detail_score": 0.0}]
    assert snapshot["certainty_coefficient"] == 0.0


@pytest.mark.asyncio
async def test_phone_certification_cannot_restart_after_completion(client: AsyncClient) -> None:
    sid = await new_session(client)
    start = {"phone_number": "0707123456", "identity_name": "A B"}
    await client.post(f"/api/sessions/{sid}/phone", json=start)
    await client.post(f"/api/sessions/{sid}/phone/otp/verify", json={"code": "123456"})
    await client.post(f"/api/sessions/{sid}/phone/skip")
    await client.post(f"/api/sessions/{sid}/phone/complete")
    before = (await client.get(f"/api/sessions/{sid}/snapshot")).json()
    assert before["certainty_coefficient"] == pytest.approx(round(0.9 / TOTAL_SOURCE_WEIGHT, 4))

    resp = await client.post(f"/api/sessions/{sid}/phone", json=start)
    assert resp.status_code == 409

    for step in ("skip", "skip", "complete"):
        assert (await client.post(f"/api/sessions/{sid}/phone/{step}")).status_code == 409
    assert (await client.get(f"/api/sessions/{sid}/snapshot")).json() == before


@pytest.mark.asyncio
async def test_phone_number_can_change_before_verification(client, fakes) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456", "identity_name": "A B"})
    resp = await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0505123456", "identity_name": "A B"})
    assert resp.status_code == 200
    assert resp.json()["phone_number"] == "0505123456"
    assert fakes.otp.sent == ["0707123456", "0505123456"]


@pytest.mark.asyncio
async def test_resend_after_verification_is_refused(client: AsyncClient) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456", "identity_name": "A B"})
    await client.post(f"/api/sessions/{sid}/phone/otp/verify", json={"code": "123456"})
    resp = await client.post(f"/api/sessions/{sid}/phone/otp/resend")
    assert resp.status_code == 409

    view = (await client.post(f"/api/sessions/{sid}/phone/skip")).json()
    assert view["code_sent"] is True


@pytest.mark.asyncio
async def test_sms_evidence(client: AsyncClient) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456", "identity_name": "A B"})

    messages = [m.model_dump(mode="json") for m in MOMO_SMS]
    view = (await client.post(f"/api/sessions/{sid}/phone/sms", json={"messages": messages})).json()
    assert view["proofs"]["sms_analyzed"] is True
    assert view["sms_confidence"] == pytest.approx(96.67)

    await client.post(f"/api/sessions/{sid}/phone/skip")
    await client.post(f"/api/sessions/{sid}/phone/skip")
    view = (await client.post(f"/api/sessions/{sid}/phone/complete")).json()
    assert view["result"]["trust_score"] == 15
    assert view["result"]["sms_confidence"] == pytest.approx(96.67)

    snapshot = (await client.get(f"/api/sessions/{sid}/snapshot")).json()
    sms = next(s for s in snapshot["sources"] if s["type"] == "sms_analysis")
    assert sms["verified"] is True
    assert sms["detail_score"] == pytest.approx(96.67)


@pytest.mark.asyncio
async def test_sms_requires_messages(client: AsyncClient) -> None:
    sid = await new_session(client)
    await client.post(f"/api/sessions/{sid}/phone", json={"phone_number": "0707123456", "identity_name": "A B"})
    resp = await client.post(f"/api/sessions/{sid}/phone/sms", json={"messages": []})
    assert resp.status_code == 422
