"""Tests for the HTTP clients of the OTP and document-analysis services."""

import pytest
import requests

from fakes import FakeHttpSession, make_response
from trustproof.errors import OtpError, ServiceUnavailable
from trustproof.schemas import DocumentAnalysisRequest
from trustproof.services.document_service import DocumentAnalysisClient
from trustproof.services.otp import OtpClient, format_phone_number, mask_phone_number


class TestPhoneFormatting:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("07 07 12 34 56", "+2250707123456"),
            ("05-05-12-34-56", "+2250505123456"),
            ("+2250707123456", "+2250707123456"),
            ("2250707123456", "+2250707123456"),
            ("221771234567", "+221771234567"),
        ],
    )
    def test_format_phone_number(self, raw: str, expected: str) -> None:
        assert format_phone_number(raw) == expected

    def test_mask_phone_number(self) -> None:
        assert mask_phone_number("+2250707123456") == "+22507****56"
        assert mask_phone_number("12345") == "12345"


def otp_client(session: FakeHttpSession, api_key=None) -> OtpClient:
    return OtpClient("http://otp.test/send", "http://otp.test/verify", api_key=api_key, session=session)


class TestOtpClient:
    def test_send(self) -> None:
        session = FakeHttpSession(make_response(200, {"success": True, "expires_in_seconds": 300}))
        dispatch = otp_client(session, api_key="secret").send("0707123456")
        assert dispatch.masked_phone == "+22507****56"
        assert dispatch.expires_in_seconds == 300
        call = session.calls[0]
        assert call["url"] == "http://otp.test/send"
        assert call["json"] == {"phone_number": "+2250707123456", "purpose": "kyc"}
        assert call["headers"]["Authorization"] == "Bearer secret"

    def test_send_uses_service_mask_and_default_expiry(self) -> None:
        session = FakeHttpSession(make_response(200, {"success": True, "phone_masked": "+225 07 ** ** 56"}))
        dispatch = otp_client(session).send("0707123456")
        assert dispatch.masked_phone == "+225 07 ** ** 56"
        assert dispatch.expires_in_seconds == 600
        assert "Authorization" not in session.calls[0]["headers"]

    def test_send_refused(self) -> None:
        session = FakeHttpSession(make_response(429, {"success": False, "error": "Too many attempts"}))
        with pytest.raises(OtpError, match="Too many attempts"):
            otp_client(session).send("0707123456")

    def test_server_error(self) -> None:
        session = FakeHttpSession(make_response(502, {"error": "gateway"}))
        with pytest.raises(OtpError):
            otp_client(session).send("0707123456")

    def test_unreachable(self) -> None:
        session = FakeHttpSession(requests.ConnectionError("refused"))
        with pytest.raises(OtpError, match="unreachable"):
            otp_client(session).verify("0707123456", "123456")

    def test_verify(self) -> None:
        session = FakeHttpSession(
            make_response(200, {"success": True}),
            make_response(400, {"success": False, "error": "Code incorrect"}),
        )
        client = otp_client(session)
        assert client.verify("0707123456", "123456") is True
        assert client.verify("0707123456", "000000") is False
        assert session.calls[0]["json"]["otp_code"] == "123456"


class TestDocumentAnalysisClient:
    request = DocumentAnalysisRequest(ocr_text="KOUASSI", document_type="cni", ocr_confidence=60)

    def test_success(self) -> None:
        session = FakeHttpSession(make_response(200, {
            "document_type": "cni",
            "full_name": "KOUASSI AMANI",
            "extraction_confidence": 82,
            "raw_fields": {"place_of_birth": "Abidjan"},
        }))
        resp = DocumentAnalysisClient("http://docs.test", api_key="k", session=session).analyze(self.request)
        assert resp.full_name == "KOUASSI AMANI"
        assert resp.raw_fields["place_of_birth"] == "Abidjan"
        assert session.calls[0]["json"] == {"ocr_text": "KOUASSI", "document_type": "cni", "ocr_confidence": 60.0}
        assert session.calls[0]["headers"]["Authorization"] == "Bearer k"

    def test_http_error(self) -> None:
        session = FakeHttpSession(make_response(503, {"error": "down"}))
        with pytest.raises(ServiceUnavailable) as exc:
            DocumentAnalysisClient("http://docs.test", session=session).analyze(self.request)
        assert exc.value.status_code == 503

    def test_timeout(self) -> None:
        session = FakeHttpSession(requests.Timeout("read timed out"))
        with pytest.raises(ServiceUnavailable):
            DocumentAnalysisClient("http://docs.test", session=session).analyze(self.request)

    def test_non_json_body(self) -> None:
        session = FakeHttpSession(make_response(200, b"<html>proxy error</html>"))
        with pytest.raises(ServiceUnavailable):
            DocumentAnalysisClient("http://docs.test", session=session).analyze(self.request)

    def test_schema_mismatch(self) -> None:
        session = FakeHttpSession(make_response(200, {"mrz_validated": "not-a-bool"}))
        with pytest.raises(ServiceUnavailable):
            DocumentAnalysisClient("http://docs.test", session=session).analyze(self.request)

    def test_list_body(self) -> None:
        session = FakeHttpSession(make_response(200, [1, 2]))
        with pytest.raises(ServiceUnavailable):
            DocumentAnalysisClient("http://docs.test", session=session).analyze(self.request)
