from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RawOcrResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float = Field(ge=0, le=100)


class ExtractedIdentityFields(BaseModel):
    full_name: Optional[str] = None
    date_of_birth: Optional[str] = None  # DD/MM/YYYY as printed on the document
    document_number: Optional[str] = None
    expiry_date: Optional[str] = None
    nationality: Optional[str] = None
    gender: Optional[str] = None
    place_of_birth: Optional[str] = None
    extraction_confidence: float = Field(default=0.0, ge=0, le=100)
    mrz_validated: bool = False
    is_regional_scheme_a: bool = False  # UEMOA
    is_regional_scheme_b: bool = False  # CEDEAO

    @field_validator(
        "full_name", "date_of_birth", "document_number", "expiry_date",
        "nationality", "gender", "place_of_birth",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class ProofSourceType(str, Enum):
    OTP = "otp"
    USSD_CAPTURE = "ussd_capture"
    SMS_ANALYSIS = "sms_analysis"
    DOCUMENT_OCR = "document_ocr"
    GUARANTOR = "guarantor"


SOURCE_WEIGHTS: Dict[ProofSourceType, float] = {
    ProofSourceType.OTP: 0.9,
    ProofSourceType.USSD_CAPTURE: 0.85,
    ProofSourceType.SMS_ANALYSIS: 0.9,
    ProofSourceType.DOCUMENT_OCR: 0.8,
    ProofSourceType.GUARANTOR: 0.7,
}

# Coarser split used when displaying scores
VERIFIED_EVIDENCE_WEIGHT = 0.9
DECLARATIVE_EVIDENCE_WEIGHT = 0.3


class ProofSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ProofSourceType
    verified: bool = False
    detail_score: Optional[float] = Field(default=None, ge=0, le=100)

    @property
    def weight(self) -> float:
        return SOURCE_WEIGHTS[self.type]

    @property
    def display_weight(self) -> float:
        return VERIFIED_EVIDENCE_WEIGHT if self.verified else DECLARATIVE_EVIDENCE_WEIGHT


class CertaintySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    sources: Tuple[ProofSource, ...] = ()
    certainty_coefficient: float = Field(default=0.0, ge=0.0, le=1.0)


class ProofLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    CERTIFIED = "certified"


class ProofFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    otp_verified: bool = False
    ussd_captured: bool = False
    name_matched: bool = False
    sms_analyzed: bool = False


class PhoneCertificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    phone_number: str
    proof_level: ProofLevel
    trust_score: int = Field(ge=0, le=100)
    proofs: ProofFlags
    name_match_score: Optional[float] = None
    sms_confidence: Optional[float] = None
    certified_at: datetime


class NameMatchResult(BaseModel):
    reference_name: str
    match_score: int = Field(ge=0, le=100)
    is_match: bool
    details: List[str] = []


class UssdAnalysis(BaseModel):
    provider: str = "unknown"
    screen_type: str = "unknown"
    extracted_name: Optional[str] = None
    extracted_phone: Optional[str] = None
    ocr_confidence: float = 0.0
    tampering_probability: int = 0
    ui_authenticity_score: int = 0
    name_match_result: Optional[NameMatchResult] = None
    can_certify: bool = False
    reasons: List[str] = []


# ---- mobile-money SMS ----

class SmsMessage(BaseModel):
    text: str = Field(max_length=2000)
    sender: Optional[str] = None
    received_at: Optional[datetime] = None


class SmsTransaction(BaseModel):
    """One parsed confirmation. The message text itself is not kept."""

    provider: str = "unknown"
    transaction_type: str = "other"  # credit, debit, balance, other
    amount: float = 0.0
    currency: str = "XOF"
    balance_after: Optional[float] = None
    counterparty_name: Optional[str] = None
    counterparty_phone: Optional[str] = None
    reference: Optional[str] = None
    received_at: Optional[datetime] = None
    parse_confidence: int = Field(default=0, ge=0, le=100)
    pattern: str


class SmsAnalysis(BaseModel):
    transactions: List[SmsTransaction] = []
    total_messages: int = 0
    rejected_messages: int = 0
    total_credits: float = 0.0
    total_debits: float = 0.0
    credit_count: int = 0
    debit_count: int = 0
    average_transaction: float = 0.0
    largest_credit: float = 0.0
    largest_debit: float = 0.0
    providers: List[str] = []
    latest_balance: Optional[float] = None
    activity_level: str = "low"
    oldest_transaction: Optional[datetime] = None
    confidence: float = Field(default=0.0, ge=0, le=100)
    risk_flags: List[str] = []
    can_certify: bool = False


# ---- document-analysis service wire models ----

class DocumentAnalysisRequest(BaseModel):
    ocr_text: str
    document_type: str = "cni"
    ocr_confidence: float = 0.0


class DocumentAnalysisResponse(BaseModel):
    document_type: str = "unknown"
    full_name: Optional[str] = None
    birth_date: Optional[str] = None
    document_number: Optional[str] = None
    expiry_date: Optional[str] = None
    nationality: Optional[str] = None
    gender: Optional[str] = None
    issuing_country: Optional[str] = None
    mrz_validated: bool = False
    is_uemoa: bool = False
    is_cedeao: bool = False
    extraction_confidence: Optional[float] = None
    overall_confidence: Optional[float] = None
    validation_warnings: List[str] = []
    raw_fields: Dict[str, Any] = {}
    field_sources: Dict[str, str] = {}  # "<source>:<confidence>" per field


# ---- session API models ----

class SessionCreated(BaseModel):
    session_id: str


class DocumentPreview(BaseModel):
    document_token: str
    fields: ExtractedIdentityFields
    requires_manual_review: bool
    degraded: bool = False
    degraded_reason: Optional[str] = None
    slow_analysis: bool = False
    applied_steps: List[str] = []


class DocumentStatus(BaseModel):
    document_token: str
    status: str  # pending, ready, failed, confirmed
    slow_analysis: bool = False
    preview: Optional[DocumentPreview] = None
    error: Optional[str] = None
    retry: bool = False


class DocumentConfirmation(BaseModel):
    document_token: str
    corrections: Dict[str, Optional[str]] = {}
    acknowledge_review: bool = False
    # Typed by the user instead of waiting for OCR; ``corrections`` then holds every field
    manual_entry: bool = False


class PhoneStartRequest(BaseModel):
    phone_number: str
    identity_name: Optional[str] = None


class OtpVerifyRequest(BaseModel):
    code: str = Field(max_length=6)


class SmsSubmission(BaseModel):
    messages: List[SmsMessage] = Field(min_length=1, max_length=500)


class PhoneCertificationView(BaseModel):
    state: str
    phone_number: str
    code_sent: bool
    masked_phone: Optional[str] = None
    expires_in_seconds: int = 0
    error: Optional[str] = None
    proofs: ProofFlags
    trust_score: int
    proof_level: ProofLevel
    name_match_score: Optional[float] = None
    sms_confidence: Optional[float] = None
    result: Optional[PhoneCertificationResult] = None
