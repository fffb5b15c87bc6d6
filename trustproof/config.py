import os
from functools import lru_cache
from pydantic import BaseModel


class Settings(BaseModel):
    # Remote collaborators
    DOCUMENT_ANALYZE_URL: str = os.getenv("DOCUMENT_ANALYZE_URL", "http://localhost:8000/api/documents/analyze")
    OTP_SEND_URL: str = os.getenv("OTP_SEND_URL", "http://localhost:8001/sms-otp-send")
    OTP_VERIFY_URL: str = os.getenv("OTP_VERIFY_URL", "http://localhost:8001/sms-otp-verify")
    SERVICE_API_KEY: str | None = os.getenv("SERVICE_API_KEY") or None
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "20"))

    # OCR
    OCR_LANG: str = os.getenv("OCR_LANG", "fra+eng")
    TESSERACT_CMD: str | None = os.getenv("TESSERACT_CMD") or None
    OCR_SLOW_THRESHOLD_SECONDS: float = float(os.getenv("OCR_SLOW_THRESHOLD_SECONDS", "30"))
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

    # Decision thresholds
    MANUAL_REVIEW_THRESHOLD: float = float(os.getenv("MANUAL_REVIEW_THRESHOLD", "70"))
    NAME_MATCH_THRESHOLD: float = float(os.getenv("NAME_MATCH_THRESHOLD", "85"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


@lru_cache
def get_settings() -> Settings:
    return Settings()
