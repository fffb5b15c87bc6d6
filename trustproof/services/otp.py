import re
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from trustproof.errors import OtpError

UEMOA_DIAL_CODES = ("225", "221", "223", "226", "228", "229", "227", "245")
DEFAULT_EXPIRY_SECONDS = 600


@dataclass(frozen=True)
class OtpDispatch:
    masked_phone: str
    expires_in_seconds: int


class OtpService(Protocol):
    def send(self, phone_number: str, purpose: str) -> OtpDispatch: ...

    def verify(self, phone_number: str, code: str, purpose: str) -> bool: ...


def format_phone_number(phone: str) -> str:
    """Normalize to E.164; bare local numbers are assumed to be Ivorian."""
    cleaned = re.sub(r"[\s\-]", "", phone)
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith(UEMOA_DIAL_CODES):
        return "+" + cleaned
    if cleaned.startswith(("07", "05", "01")):
        return "+225" + cleaned
    return "+" + cleaned


def mask_phone_number(phone: str) -> str:
    if len(phone) < 8:
        return phone
    return phone[:6] + "****" + phone[-2:]


class OtpClient:
    """HTTP client for the SMS OTP send/verify endpoints."""

    def __init__(self, send_url: str, verify_url: str, api_key: Optional[str] = None,
                 timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.send_url = send_url
        self.verify_url = verify_url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, url: str, payload: dict) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise OtpError(f"OTP service unreachable: {e}") from e
        if not isinstance(data, dict):
            raise OtpError("OTP service returned an unexpected body")
        # 4xx bodies still carry {success: false, error}; only 5xx is a transport failure
        if resp.status_code >= 500:
            raise OtpError(data.get("error") or f"OTP service error {resp.status_code}")
        return data

    def send(self, phone_number: str, purpose: str = "kyc") -> OtpDispatch:
        phone = format_phone_number(phone_number)
        data = self._post(self.send_url, {"phone_number": phone, "purpose": purpose})
        if not data.get("success"):
            raise OtpError(data.get("error") or "SMS could not be sent")
        return OtpDispatch(
            masked_phone=data.get("phone_masked") or mask_phone_number(phone),
            expires_in_seconds=int(data.get("expires_in_seconds") or DEFAULT_EXPIRY_SECONDS),
        )

    def verify(self, phone_number: str, code: str, purpose: str = "kyc") -> bool:
        data = self._post(
            self.verify_url,
            {"phone_number": format_phone_number(phone_number), "otp_code": code, "purpose": purpose},
        )
        return bool(data.get("success"))
